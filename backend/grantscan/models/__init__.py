from grantscan.models.company import CompanyProfile, FinancialYear
from grantscan.models.program import Program, MERGEABLE_FIELDS, is_empty
from grantscan.models.fit import (
    DIMENSION_KEYS,
    Eligibility,
    EligibilityDetails,
    FitAnalysisResult,
    FitDimensions,
)
from grantscan.models.job import JobStage, JobStatus, ProgramFailure, ScanJob, ScoredProgram

__all__ = [
    "CompanyProfile", "FinancialYear",
    "Program", "MERGEABLE_FIELDS", "is_empty",
    "DIMENSION_KEYS", "Eligibility", "EligibilityDetails", "FitAnalysisResult", "FitDimensions",
    "JobStage", "JobStatus", "ProgramFailure", "ScanJob", "ScoredProgram",
]
