from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from database import get_active_policy, upsert_policy
from positions import (
    DEFAULT_ABSENCE_BLOCKING,
    DEFAULT_ASSISTANT_ROLES,
    DEFAULT_SPECIALIST_ROLES,
    FREE,
)


AUTO_REST_NOTE = "auto rest"

LIMIT_DEFAULTS: Dict[str, int] = {
    "foreground": 4,
    "background": 12,
    "weekend": 1,
}
STAFFING_DEFAULTS: Dict[str, int] = {
    "specialists": 2,
    "assistants": 3,
}

BASELINE_POLICY: Dict[str, Any] = {
    "name": "Baseline Roster Rules",
    "absence_blocking_rules": DEFAULT_ABSENCE_BLOCKING,
    "limits": LIMIT_DEFAULTS,
    "staffing_minimums": STAFFING_DEFAULTS,
    "specialist_roles": DEFAULT_SPECIALIST_ROLES,
    "assistant_roles": DEFAULT_ASSISTANT_ROLES,
    "auto_rest": {"position": FREE, "note": AUTO_REST_NOTE},
    "undo": {"max_groups": 50},
}

# Flat keys used by the settings table of the roster front end.
SETTINGS_KEYS: Dict[str, tuple] = {
    "limit_fore_services": ("limits", "foreground"),
    "limit_back_services": ("limits", "background"),
    "limit_weekend_services": ("limits", "weekend"),
    "min_present_specialists": ("staffing_minimums", "specialists"),
    "min_present_assistants": ("staffing_minimums", "assistants"),
}


@dataclass
class RuleSettings:
    """Typed view of the policy values the validator and the cascader read."""

    absence_blocking: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_ABSENCE_BLOCKING))
    limit_foreground: int = LIMIT_DEFAULTS["foreground"]
    limit_background: int = LIMIT_DEFAULTS["background"]
    limit_weekend: int = LIMIT_DEFAULTS["weekend"]
    min_specialists: int = STAFFING_DEFAULTS["specialists"]
    min_assistants: int = STAFFING_DEFAULTS["assistants"]
    specialist_roles: List[str] = field(default_factory=lambda: list(DEFAULT_SPECIALIST_ROLES))
    assistant_roles: List[str] = field(default_factory=lambda: list(DEFAULT_ASSISTANT_ROLES))
    rest_position: str = FREE
    rest_note: str = AUTO_REST_NOTE
    undo_depth: int = 50

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]]) -> "RuleSettings":
        normalized = _normalize_policy(policy or {})
        limits = normalized["limits"]
        staffing = normalized["staffing_minimums"]
        auto_rest = normalized["auto_rest"]
        return cls(
            absence_blocking=dict(normalized["absence_blocking_rules"]),
            limit_foreground=limits["foreground"],
            limit_background=limits["background"],
            limit_weekend=limits["weekend"],
            min_specialists=staffing["specialists"],
            min_assistants=staffing["assistants"],
            specialist_roles=list(normalized["specialist_roles"]),
            assistant_roles=list(normalized["assistant_roles"]),
            rest_position=auto_rest["position"],
            rest_note=auto_rest["note"],
            undo_depth=normalized["undo"]["max_groups"],
        )


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _as_int(value: Any, default: int) -> int:
    try:
        return max(0, int(float(str(value).replace(",", "."))))
    except (TypeError, ValueError):
        return default


def _normalize_policy(policy: Dict) -> Dict:
    """Fill missing sections with defaults and coerce numeric limits."""
    if not isinstance(policy, dict):
        return build_default_policy()
    normalized = _deep_update(build_default_policy(), policy)
    for section, defaults in (("limits", LIMIT_DEFAULTS), ("staffing_minimums", STAFFING_DEFAULTS)):
        values = normalized.get(section)
        if not isinstance(values, dict):
            values = {}
        normalized[section] = {key: _as_int(values.get(key, default), default) for key, default in defaults.items()}
    # A supplied rules map replaces the defaults as a whole.
    rules = policy.get("absence_blocking_rules", normalized["absence_blocking_rules"])
    if isinstance(rules, str):
        try:
            rules = json.loads(rules)
        except json.JSONDecodeError:
            rules = None
    if not isinstance(rules, dict):
        rules = dict(DEFAULT_ABSENCE_BLOCKING)
    normalized["absence_blocking_rules"] = {
        str(position): bool(blocking) for position, blocking in rules.items() if isinstance(blocking, bool)
    }
    for key, defaults in (("specialist_roles", DEFAULT_SPECIALIST_ROLES), ("assistant_roles", DEFAULT_ASSISTANT_ROLES)):
        roles = normalized.get(key)
        if not isinstance(roles, list):
            roles = list(defaults)
        normalized[key] = [role for role in roles if isinstance(role, str) and role.strip()]
    auto_rest = normalized.get("auto_rest") if isinstance(normalized.get("auto_rest"), dict) else {}
    normalized["auto_rest"] = {
        "position": str(auto_rest.get("position") or FREE),
        "note": str(auto_rest.get("note") or AUTO_REST_NOTE),
    }
    undo_cfg = normalized.get("undo") if isinstance(normalized.get("undo"), dict) else {}
    normalized["undo"] = {"max_groups": max(1, _as_int(undo_cfg.get("max_groups", 50), 50))}
    return normalized


def policy_from_settings(settings: Mapping[str, Any], base: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Translate the flat key/value settings table into a policy payload."""
    policy = _normalize_policy(base or {})
    for key, (section, name) in SETTINGS_KEYS.items():
        if key in settings and settings[key] not in (None, ""):
            policy[section][name] = _as_int(settings[key], policy[section][name])
    rules = settings.get("absence_blocking_rules")
    if rules not in (None, ""):
        policy["absence_blocking_rules"] = rules
    return _normalize_policy(policy)


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return build_default_policy()
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", "Baseline Roster Rules")
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")
