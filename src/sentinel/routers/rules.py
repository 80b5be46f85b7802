from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Path, Query, Request, status

from src.sentinel.schemas.common import ErrorResponse, SourceType
from src.sentinel.schemas.rules import RuleCreate, RuleListResponse, RuleOut, RuleUpdate
from src.sentinel.services import rules_service

router = APIRouter(prefix="/api/rules", tags=["Rules"])


@router.get(
    "",
    response_model=RuleListResponse,
    summary="List rules",
    description="List escalation/auto-close rules ordered by priority descending.",
    operation_id="list_rules",
)
async def list_rules(
    request: Request,
    source_type: Optional[SourceType] = Query(default=None, alias="sourceType"),
    enabled: Optional[bool] = Query(default=None),
) -> RuleListResponse:
    """List rules."""
    items = await rules_service.list_rules(request, source_type=source_type, enabled=enabled)
    return RuleListResponse(items=items, total=len(items))


@router.post(
    "",
    response_model=RuleOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Create rule",
    description="Create a rule. The rule engine reloads its rule index afterwards.",
    operation_id="create_rule",
)
async def create_rule(request: Request, payload: RuleCreate) -> RuleOut:
    """Create a rule."""
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="name must not be empty")
    try:
        return await rules_service.create_rule(request, payload)
    except rules_service.RuleAlreadyExistsError:
        raise HTTPException(status_code=409, detail="rule already exists")


@router.get(
    "/{rule_id}",
    response_model=RuleOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get rule",
    description="Fetch a single rule by ruleId.",
    operation_id="get_rule",
)
async def get_rule(
    request: Request,
    rule_id: str = Path(..., description="Rule id."),
) -> RuleOut:
    """Get a rule by id."""
    rule = await rules_service.get_rule(request, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="rule not found")
    return rule


@router.put(
    "/{rule_id}",
    response_model=RuleOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Update rule",
    description="Update a rule; conditions and actions are merged into the existing values.",
    operation_id="update_rule",
)
async def update_rule(
    request: Request,
    payload: RuleUpdate,
    rule_id: str = Path(..., description="Rule id."),
) -> RuleOut:
    """Update a rule."""
    if payload.name is not None and not payload.name.strip():
        raise HTTPException(status_code=400, detail="name must not be empty")
    updated = await rules_service.update_rule(request, rule_id, payload)
    if not updated:
        raise HTTPException(status_code=404, detail="rule not found")
    return updated


@router.patch(
    "/{rule_id}/toggle",
    response_model=RuleOut,
    responses={404: {"model": ErrorResponse}},
    summary="Toggle rule",
    description="Flip a rule between enabled and disabled.",
    operation_id="toggle_rule",
)
async def toggle_rule(
    request: Request,
    rule_id: str = Path(..., description="Rule id."),
) -> RuleOut:
    """Toggle a rule."""
    toggled = await rules_service.toggle_rule(request, rule_id)
    if not toggled:
        raise HTTPException(status_code=404, detail="rule not found")
    return toggled


@router.delete(
    "/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete rule",
    description="Delete a rule by ruleId.",
    operation_id="delete_rule",
)
async def delete_rule(
    request: Request,
    rule_id: str = Path(..., description="Rule id."),
) -> None:
    """Delete a rule."""
    ok = await rules_service.delete_rule(request, rule_id)
    if not ok:
        raise HTTPException(status_code=404, detail="rule not found")
    return None
