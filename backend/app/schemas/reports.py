"""
Commission report schemas.

Serialized with camelCase keys for the dashboard.
"""

from typing import List

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TrainerCommissionRow(CamelModel):
    id: int
    name: str
    role: str
    client_count: int
    revenue: float
    trainer_amount: float
    owner_amount: float
    commission_rate: float


class CommissionSummary(CamelModel):
    total_revenue: float
    total_trainer_payout: float
    total_owner_cut: float
    period_label: str


class CommissionReportResponse(CamelModel):
    summary: CommissionSummary
    trainers: List[TrainerCommissionRow]
