"""Stateless statistical endpoints: ad-hoc tests and planning helpers."""

import math

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from src.domains.experimentation.analysis import (
    analyze_continuous,
    analyze_conversion,
    crosses_boundary,
    required_sample_size,
    sequential_boundary,
)
from src.domains.experimentation.models import VariantCounts, VariantStats

router = APIRouter(prefix="/api/v1/analysis", tags=["analysis"])


class ConversionTestRequest(BaseModel):
    control: VariantCounts
    treatment: VariantCounts
    confidence: float = Field(default=0.95, gt=0, lt=1)


class ContinuousTestRequest(BaseModel):
    control: VariantStats
    treatment: VariantStats
    confidence: float = Field(default=0.95, gt=0, lt=1)


def _finite_or_none(value: float) -> float | None:
    return value if math.isfinite(value) else None


@router.post("/conversion")
async def conversion_test(request: ConversionTestRequest) -> dict:
    result = analyze_conversion(request.control, request.treatment, request.confidence)
    return result.model_dump(mode="json")


@router.post("/continuous")
async def continuous_test(request: ContinuousTestRequest) -> dict:
    result = analyze_continuous(request.control, request.treatment, request.confidence)
    return result.model_dump(mode="json")


@router.get("/sample-size")
async def sample_size(
    baseline_rate: float = Query(..., gt=0, lt=1),
    mde: float = Query(..., gt=0),
    power: float = Query(0.80, gt=0, lt=1),
    confidence: float = Query(0.95, gt=0, lt=1),
) -> dict:
    """Per-variant sample size for a conversion test with relative ``mde``."""
    n = required_sample_size(baseline_rate, mde, power, confidence)
    return {"sample_size_per_variant": n, "baseline_rate": baseline_rate, "mde": mde}


@router.get("/sequential-boundary")
async def sequential_boundary_endpoint(
    current_n: int = Query(..., ge=0),
    max_n: int = Query(..., gt=0),
    alpha: float = Query(0.05, gt=0, lt=1),
    statistic: float | None = Query(None),
) -> dict:
    """Boundary at this look. Bounds are null before any data (infinitely wide)."""
    boundary = sequential_boundary(current_n, max_n, alpha)
    response = {
        "information_fraction": boundary.information_fraction,
        "alpha_spent": boundary.alpha_spent,
        "upper_bound": _finite_or_none(boundary.upper_bound),
        "lower_bound": _finite_or_none(boundary.lower_bound),
    }
    if statistic is not None:
        response["stop_early"] = crosses_boundary(statistic, boundary)
    return response
