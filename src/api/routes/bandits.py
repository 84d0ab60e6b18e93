"""API routes for adaptive (bandit) allocation."""

from typing import Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from src.api.dependencies import ExperimentServices, get_services
from src.domains.experimentation.bandit import LinUCBBandit, ThompsonSampler

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/bandits", tags=["bandits"])


class CreateBanditRequest(BaseModel):
    name: str
    kind: Literal["thompson", "linucb"] = "thompson"
    arm_ids: list[str] = Field(min_length=1)
    n_features: int | None = Field(default=None, gt=0)
    seed: int | None = None


class SelectRequest(BaseModel):
    context: list[float] | None = None


class UpdateRequest(BaseModel):
    arm_id: str
    success: bool | None = None  # thompson
    reward: float | None = None  # linucb
    context: list[float] | None = None


def _describe(bandit: ThompsonSampler | LinUCBBandit) -> list[dict]:
    if isinstance(bandit, ThompsonSampler):
        return [
            {
                "arm_id": arm.arm_id,
                "successes": arm.successes,
                "failures": arm.failures,
                "pulls": arm.pulls,
                "mean": arm.mean,
            }
            for arm in bandit.arms()
        ]
    return [
        {"arm_id": arm.arm_id, "pulls": arm.pulls, "weights": arm.weights.tolist()}
        for arm in bandit.arms()
    ]


@router.post("")
async def create_bandit(
    request: CreateBanditRequest,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    if request.kind == "thompson":
        bandit = services.bandits.create_thompson(request.name, request.arm_ids, request.seed)
    else:
        if request.n_features is None:
            raise HTTPException(status_code=400, detail="n_features is required for linucb")
        bandit = services.bandits.create_linucb(
            request.name, request.arm_ids, request.n_features
        )
    logger.info("bandit_created", name=request.name, kind=request.kind)
    return {"name": request.name, "kind": request.kind, "arms": _describe(bandit)}


@router.get("/{name}")
async def get_bandit(
    name: str,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    bandit = services.bandits.get(name)
    return {"name": name, "arms": _describe(bandit)}


@router.post("/{name}/select")
async def select_arm(
    name: str,
    request: SelectRequest,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    bandit = services.bandits.get(name)
    if isinstance(bandit, LinUCBBandit):
        if request.context is None:
            raise HTTPException(status_code=400, detail="context is required for linucb")
        return {"arm_id": bandit.select_arm(request.context)}
    return {"arm_id": bandit.select_arm()}


@router.post("/{name}/update")
async def update_arm(
    name: str,
    request: UpdateRequest,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    bandit = services.bandits.get(name)
    if isinstance(bandit, LinUCBBandit):
        if request.context is None or request.reward is None:
            raise HTTPException(
                status_code=400, detail="context and reward are required for linucb"
            )
        bandit.update_arm(request.arm_id, request.context, request.reward)
    else:
        if request.success is None:
            raise HTTPException(status_code=400, detail="success is required for thompson")
        bandit.update_arm(request.arm_id, request.success)
    return {"name": name, "arms": _describe(bandit)}
