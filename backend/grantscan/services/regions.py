"""Region normalization for program eligibility vs company address."""
from __future__ import annotations

import re
import unicodedata
from typing import Dict, Iterable, List, Optional

# Canonical short name -> accepted spellings (after suffix stripping and lowercasing).
REGION_SYNONYMS: Dict[str, List[str]] = {
    "서울": ["서울", "seoul"],
    "부산": ["부산", "busan"],
    "대구": ["대구", "daegu"],
    "인천": ["인천", "incheon"],
    "광주": ["광주", "gwangju"],
    "대전": ["대전", "daejeon"],
    "울산": ["울산", "ulsan"],
    "세종": ["세종", "sejong"],
    "경기": ["경기", "gyeonggi"],
    "강원": ["강원", "gangwon"],
    "충북": ["충북", "충청북", "chungbuk", "chungcheongbuk"],
    "충남": ["충남", "충청남", "chungnam", "chungcheongnam"],
    "전북": ["전북", "전라북", "jeonbuk", "jeollabuk"],
    "전남": ["전남", "전라남", "jeonnam", "jeollanam"],
    "경북": ["경북", "경상북", "gyeongbuk", "gyeongsangbuk"],
    "경남": ["경남", "경상남", "gyeongnam", "gyeongsangnam"],
    "제주": ["제주", "jeju"],
}

NATIONWIDE_TOKENS = {"전국", "전지역", "nationwide", "national", "all"}

# Longest first so "특별자치도" is stripped before "도".
_ADMIN_SUFFIXES = (
    "특별자치시",
    "특별자치도",
    "광역시",
    "특별시",
    "-do",
    "-si",
    "도",
    "시",
)

_SYNONYM_LOOKUP: Dict[str, str] = {
    spelling: canonical for canonical, spellings in REGION_SYNONYMS.items() for spelling in spellings
}


def _strip_suffix(token: str) -> str:
    for suffix in _ADMIN_SUFFIXES:
        if token.endswith(suffix) and len(token) > len(suffix):
            return token[: -len(suffix)]
    return token


def normalize_region(raw: Optional[str]) -> Optional[str]:
    """Map a region spelling to its canonical short name, or None if unknown."""
    if not raw:
        return None
    token = unicodedata.normalize("NFKC", str(raw)).strip().lower()
    token = re.sub(r"[\s()\[\]]+", "", token)
    if not token:
        return None
    if token in NATIONWIDE_TOKENS:
        return "전국"
    stripped = _strip_suffix(token)
    if stripped in _SYNONYM_LOOKUP:
        return _SYNONYM_LOOKUP[stripped]
    if token in _SYNONYM_LOOKUP:
        return _SYNONYM_LOOKUP[token]
    # "경기도 성남시" style prefixes
    for spelling, canonical in _SYNONYM_LOOKUP.items():
        if len(spelling) >= 2 and stripped.startswith(spelling):
            return canonical
    return None


def normalize_regions(values: Optional[Iterable[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    out: List[str] = []
    for value in values:
        canonical = normalize_region(value)
        label = canonical or str(value or "").strip()
        if label and label not in out:
            out.append(label)
    return out


def extract_region_from_address(address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    for token in re.split(r"[\s,]+", unicodedata.normalize("NFKC", str(address)).strip()):
        canonical = normalize_region(token)
        if canonical and canonical != "전국":
            return canonical
    return None


def is_region_mismatch(regions: Optional[Iterable[str]], company_region: Optional[str]) -> bool:
    """True only when the program is limited to known regions that exclude the company's."""
    if not company_region:
        return False
    canonical = [normalize_region(value) for value in (regions or [])]
    known = [value for value in canonical if value]
    if not known or "전국" in known:
        return False
    return company_region not in known
