"""Anti-piracy domain enums and the violation escalation table."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ViolationType(str, Enum):
    DEVTOOLS = "devtools"
    SCREEN_SHARE = "screen_share"
    TAB_SWITCH = "tab_switch"
    COPY_ATTEMPT = "copy_attempt"
    RIGHT_CLICK = "right_click"
    KEYBOARD_SHORTCUT = "keyboard_shortcut"
    SUSPICIOUS_BEHAVIOR = "suspicious_behavior"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BanType(str, Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class ViolationRule:
    severity: Severity
    ban_hours: int
    threshold: int  # same-type violations in the trailing 24h that trigger a ban


VIOLATION_RULES: dict[ViolationType, ViolationRule] = {
    ViolationType.DEVTOOLS: ViolationRule(Severity.HIGH, 24, 5),
    ViolationType.SCREEN_SHARE: ViolationRule(Severity.CRITICAL, 72, 2),
    ViolationType.TAB_SWITCH: ViolationRule(Severity.LOW, 1, 10),
    ViolationType.COPY_ATTEMPT: ViolationRule(Severity.MEDIUM, 6, 5),
    ViolationType.RIGHT_CLICK: ViolationRule(Severity.LOW, 1, 15),
    ViolationType.KEYBOARD_SHORTCUT: ViolationRule(Severity.MEDIUM, 2, 10),
    ViolationType.SUSPICIOUS_BEHAVIOR: ViolationRule(Severity.HIGH, 48, 10),
}

VIOLATION_WINDOW_SECONDS = 24 * 3600

DAILY_WATCH_LIMIT_SECONDS = 3 * 3600
DAILY_PLAY_ATTEMPT_LIMIT = 50
