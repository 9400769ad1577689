#!/usr/bin/env python3
"""Run a scan locally against the configured sources and print progress events."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

from grantscan.api.schemas import CompanyProfileIn
from grantscan.config import get_settings_provider
from grantscan.models.job import JobStatus, ScanJob
from grantscan.services.aggregator import Aggregator, SourceSelection
from grantscan.services.connectors import LISTING_SOURCES, build_connectors
from grantscan.services.detail_pages import DetailEnricher
from grantscan.services.fit_scoring import FitScoringEngine
from grantscan.services.llm import ReasoningOrchestrator
from grantscan.services.progress import ProgressChannel
from grantscan.services.retrieval import ListingCache
from grantscan.services.scan_runner import ScanRunner


def _load_json(path: Path) -> Dict[str, Any]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Expected JSON object in {path}")
    return payload


async def _run(company_path: Path, sources: List[str], out: Path | None) -> int:
    provider = get_settings_provider()
    company = CompanyProfileIn.model_validate(_load_json(company_path)).to_profile()
    cache = ListingCache(provider)
    orchestrator = ReasoningOrchestrator(provider)
    runner = ScanRunner(
        provider,
        Aggregator(provider, build_connectors(provider), cache if cache.enabled else None),
        FitScoringEngine(provider, orchestrator),
        DetailEnricher(provider, orchestrator, cache=cache if cache.enabled else None),
    )
    job = ScanJob()
    channel = ProgressChannel()
    task = asyncio.create_task(runner.run(job, company, SourceSelection(sources=sources), channel))

    async for event in channel.events():
        if event.event == "progress":
            data = event.data
            print(f"[{data['percent']:3d}%] {data['stage']} {data['current']}/{data['total']} {data['programName']}")
        elif event.event == "error":
            print(f"error: {event.data['message']}", file=sys.stderr)
        elif out is not None:
            out.write_text(json.dumps(event.data, ensure_ascii=False, indent=2), encoding="utf-8")
            print(f"Wrote {len(event.data.get('results') or [])} scored programs to {out}")
        else:
            print(json.dumps(event.data, ensure_ascii=False, indent=2))

    await task
    return 0 if job.status == JobStatus.completed else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Scan support programs for a company profile.")
    parser.add_argument("--company", required=True, help="JSON file with the company profile")
    parser.add_argument("--sources", default=",".join(LISTING_SOURCES), help="Comma-separated source names")
    parser.add_argument("--out", default=None, help="Write the completed result payload here")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    sources = [name.strip() for name in args.sources.split(",") if name.strip()]
    out = Path(args.out) if args.out else None
    raise SystemExit(asyncio.run(_run(Path(args.company), sources, out)))


if __name__ == "__main__":
    main()
