"""Company profile supplied by the calling application (read-only input)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class CompanyProfile:
    name: str
    industry: Optional[str] = None
    description: Optional[str] = None
    revenue: Optional[int] = None  # KRW
    employees: Optional[int] = None
    address: Optional[str] = None
    certifications: Tuple[str, ...] = ()
    core_competencies: Tuple[str, ...] = ()
    ip_list: Tuple[str, ...] = ()
    founded_year: Optional[int] = None
    business_type: Optional[str] = None
    main_products: Tuple[str, ...] = ()
    financial_trend: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "industry": self.industry,
            "description": self.description,
            "revenue": self.revenue,
            "employees": self.employees,
            "address": self.address,
            "certifications": list(self.certifications),
            "coreCompetencies": list(self.core_competencies),
            "ipList": list(self.ip_list),
            "foundedYear": self.founded_year,
            "businessType": self.business_type,
            "mainProducts": list(self.main_products),
            "financialTrend": self.financial_trend,
        }


@dataclass(frozen=True)
class FinancialYear:
    """One business-report year from the company registry."""
    year: int
    revenue: int = 0
    operating_profit: int = 0
    net_income: int = 0
    rnd_expense: int = 0
    personnel_expense: int = 0
    total_assets: int = 0
    total_equity: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "year": self.year,
            "revenue": self.revenue,
            "operatingProfit": self.operating_profit,
            "netIncome": self.net_income,
            "rndExpense": self.rnd_expense,
            "personnelExpense": self.personnel_expense,
            "totalAssets": self.total_assets,
            "totalEquity": self.total_equity,
        }
