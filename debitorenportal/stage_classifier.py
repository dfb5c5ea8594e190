"""
Dunning Stage Classifier

Maps days overdue onto the configured dunning stages and provides the
display names used in email subjects and headers.

4-Stage System:
    reminder:  Zahlungserinnerung   (no fee)
    dunning1:  1. Mahnung
    dunning2:  2. Mahnung
    dunning3:  Letzte Mahnung

Thresholds come from each customer's ``DunningRules``; a stage applies once
its ``days_after_due`` is reached and it is enabled.  The highest matching
stage wins.
"""

from __future__ import annotations

from typing import Optional

from .models import DunningRules, DunningStage, stage_key


NO_STAGE = "none"

STAGE_NAMES: dict[str, str] = {
    DunningStage.REMINDER.value: "Zahlungserinnerung",
    DunningStage.DUNNING1.value: "1. Mahnung",
    DunningStage.DUNNING2.value: "2. Mahnung",
    DunningStage.DUNNING3.value: "Letzte Mahnung",
}

# Checked from most to least severe.
_ESCALATION_ORDER: tuple[DunningStage, ...] = (
    DunningStage.DUNNING3,
    DunningStage.DUNNING2,
    DunningStage.DUNNING1,
    DunningStage.REMINDER,
)


def stage_name(stage: DunningStage | str) -> str:
    """Human-readable stage label; unknown stages are returned verbatim.

    >>> stage_name("dunning1")
    '1. Mahnung'
    >>> stage_name("inkasso")
    'inkasso'
    """
    key = stage_key(stage)
    return STAGE_NAMES.get(key, key)


def determine_dunning_level(
    days_overdue: int,
    rules: Optional[DunningRules],
) -> str:
    """Return the stage key that applies at *days_overdue*, or ``"none"``.

    The rules' grace days are subtracted before comparing against the
    stage thresholds.

    Examples:
        >>> determine_dunning_level(20, DunningRules.default())
        'dunning1'
        >>> determine_dunning_level(0, DunningRules.default())
        'none'
    """
    if rules is None or days_overdue <= 0:
        return NO_STAGE

    effective_days = days_overdue - max(0, rules.grace_days)
    if effective_days <= 0:
        return NO_STAGE

    for stage in _ESCALATION_ORDER:
        rule = rules.rule_for(stage)
        if rule is not None and rule.enabled and effective_days >= rule.days_after_due:
            return stage.value

    return NO_STAGE
