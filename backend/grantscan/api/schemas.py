"""Request bodies. Field names are accepted in camelCase or snake_case."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from grantscan.models.company import CompanyProfile
from grantscan.models.program import Program
from grantscan.services.aggregator import SourceSelection
from grantscan.services.connectors import LISTING_SOURCES, SourceParams


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class CompanyProfileIn(CamelModel):
    name: str
    industry: Optional[str] = None
    description: Optional[str] = None
    revenue: Optional[int] = None
    employees: Optional[int] = None
    address: Optional[str] = None
    certifications: List[str] = Field(default_factory=list)
    core_competencies: List[str] = Field(default_factory=list)
    ip_list: List[str] = Field(default_factory=list)
    founded_year: Optional[int] = None
    business_type: Optional[str] = None
    main_products: List[str] = Field(default_factory=list)
    financial_trend: Optional[str] = None

    def to_profile(self) -> CompanyProfile:
        return CompanyProfile(
            name=self.name,
            industry=self.industry,
            description=self.description,
            revenue=self.revenue,
            employees=self.employees,
            address=self.address,
            certifications=tuple(self.certifications),
            core_competencies=tuple(self.core_competencies),
            ip_list=tuple(self.ip_list),
            founded_year=self.founded_year,
            business_type=self.business_type,
            main_products=tuple(self.main_products),
            financial_trend=self.financial_trend,
        )


class ProgramIn(CamelModel):
    program_name: str
    organizer: Optional[str] = None
    support_type: Optional[str] = None
    description: Optional[str] = None
    expected_grant: Optional[int] = None
    official_end_date: Optional[str] = None
    eligibility_criteria: Optional[List[str]] = None
    exclusion_criteria: Optional[List[str]] = None
    target_audience: Optional[str] = None
    evaluation_criteria: Optional[List[str]] = None
    required_documents: Optional[List[str]] = None
    support_details: Optional[str] = None
    selection_process: Optional[List[str]] = None
    total_budget: Optional[str] = None
    project_period: Optional[str] = None
    objectives: Optional[str] = None
    categories: Optional[List[str]] = None
    keywords: Optional[List[str]] = None
    department: Optional[str] = None
    regions: Optional[List[str]] = None

    def to_program(self) -> Program:
        return Program(**self.model_dump())


class SourceParamsIn(CamelModel):
    page: Optional[int] = None
    per_page: Optional[int] = None
    endpoint_path: Optional[str] = None

    def to_params(self) -> SourceParams:
        return SourceParams(page=self.page, per_page=self.per_page, endpoint_path=self.endpoint_path)


class ScanRequest(CamelModel):
    company: CompanyProfileIn
    sources: List[str] = Field(default_factory=lambda: list(LISTING_SOURCES))
    params: Dict[str, SourceParamsIn] = Field(default_factory=dict)
    financial_years: int = 5

    def to_selection(self) -> SourceSelection:
        return SourceSelection(
            sources=list(self.sources),
            params={name: value.to_params() for name, value in self.params.items()},
            financial_years=self.financial_years,
        )


class ScoreRequest(CamelModel):
    company: CompanyProfileIn
    program: ProgramIn


class GenerateRequest(CamelModel):
    contents: Any
    model: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class VerifyRequest(CamelModel):
    api_key: Optional[str] = None
    model: Optional[str] = None
