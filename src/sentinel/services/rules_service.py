from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import Request

from src.sentinel.models import Rule, RuleActions, RuleConditions
from src.sentinel.schemas.common import SourceType, utc_now
from src.sentinel.schemas.rules import (
    RuleActionsModel,
    RuleConditionsModel,
    RuleCreate,
    RuleOut,
    RuleUpdate,
)
from src.sentinel.services.rule_engine import RULES_CACHE_KEY
from src.sentinel.state import AppState, get_state

logger = logging.getLogger(__name__)


class RuleAlreadyExistsError(ValueError):
    """Raised when creating a rule whose ruleId is taken."""


def _rule_to_out(rule: Rule) -> RuleOut:
    return RuleOut(
        rule_id=rule.rule_id,
        source_type=rule.source_type,
        name=rule.name,
        description=rule.description,
        enabled=rule.enabled,
        priority=rule.priority,
        conditions=RuleConditionsModel(**rule.conditions.to_doc()),
        actions=RuleActionsModel(
            escalate_to_severity=rule.actions.escalate_to_severity,
            notify=rule.actions.notify,
            notification_channels=rule.actions.notification_channels,
        ),
        created_by=rule.created_by,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _conditions_from_model(model: RuleConditionsModel) -> RuleConditions:
    return RuleConditions(**model.model_dump())


def _actions_from_model(model: RuleActionsModel) -> RuleActions:
    return RuleActions(
        escalate_to_severity=model.escalate_to_severity,
        notify=model.notify,
        notification_channels=list(model.notification_channels),
    )


async def _after_mutation(state: AppState) -> None:
    # Rule edits take effect immediately rather than on the next sweep.
    state.cache.delete(RULES_CACHE_KEY)
    await state.engine.reload_rules()


# PUBLIC_INTERFACE
async def list_rules(
    request: Request, source_type: Optional[SourceType] = None, enabled: Optional[bool] = None
) -> List[RuleOut]:
    """List rules ordered by priority descending."""
    rules = await get_state(request.app).rules.list_rules(source_type=source_type, enabled=enabled)
    return [_rule_to_out(r) for r in rules]


# PUBLIC_INTERFACE
async def get_rule(request: Request, rule_id: str) -> Optional[RuleOut]:
    rule = await get_state(request.app).rules.get(rule_id)
    return _rule_to_out(rule) if rule else None


# PUBLIC_INTERFACE
async def create_rule(request: Request, payload: RuleCreate) -> RuleOut:
    """Create a rule and reload the engine. Raises RuleAlreadyExistsError on duplicate ruleId."""
    state = get_state(request.app)
    if await state.rules.get(payload.rule_id) is not None:
        raise RuleAlreadyExistsError(f"rule {payload.rule_id} already exists")

    now = utc_now()
    rule = Rule(
        rule_id=payload.rule_id,
        source_type=payload.source_type,
        name=payload.name.strip(),
        description=payload.description,
        enabled=payload.enabled,
        priority=payload.priority,
        conditions=_conditions_from_model(payload.conditions),
        actions=_actions_from_model(payload.actions),
        created_by=payload.created_by,
        created_at=now,
        updated_at=now,
    )
    await state.rules.insert(rule)
    await _after_mutation(state)
    logger.info("Rule created: %s", rule.rule_id)
    return _rule_to_out(rule)


# PUBLIC_INTERFACE
async def update_rule(request: Request, rule_id: str, payload: RuleUpdate) -> Optional[RuleOut]:
    """Partial update; conditions/actions merge into the existing values. None if not found."""
    state = get_state(request.app)
    rule = await state.rules.get(rule_id)
    if rule is None:
        return None

    if payload.name:
        rule.name = payload.name.strip()
    if payload.description is not None:
        rule.description = payload.description
    if payload.enabled is not None:
        rule.enabled = payload.enabled
    if payload.priority is not None:
        rule.priority = payload.priority
    if payload.conditions:
        merged = {**rule.conditions.to_doc(), **payload.conditions}
        rule.conditions = _conditions_from_model(RuleConditionsModel(**merged))
    if payload.actions:
        current = _rule_to_out(rule).actions.model_dump()
        merged = {**current, **payload.actions}
        rule.actions = _actions_from_model(RuleActionsModel(**merged))

    rule.updated_at = utc_now()
    await state.rules.replace(rule)
    await _after_mutation(state)
    logger.info("Rule updated: %s", rule.rule_id)
    return _rule_to_out(rule)


# PUBLIC_INTERFACE
async def toggle_rule(request: Request, rule_id: str) -> Optional[RuleOut]:
    """Flip the enabled flag. None if not found."""
    state = get_state(request.app)
    rule = await state.rules.get(rule_id)
    if rule is None:
        return None
    rule.enabled = not rule.enabled
    rule.updated_at = utc_now()
    await state.rules.replace(rule)
    await _after_mutation(state)
    logger.info("Rule toggled: %s enabled=%s", rule.rule_id, rule.enabled)
    return _rule_to_out(rule)


# PUBLIC_INTERFACE
async def delete_rule(request: Request, rule_id: str) -> bool:
    state = get_state(request.app)
    deleted = await state.rules.delete(rule_id)
    if deleted:
        await _after_mutation(state)
        logger.info("Rule deleted: %s", rule_id)
    return deleted
