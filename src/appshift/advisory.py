"""
Advisory boundary: a human-readable risk assessment for a candidate folder.

The engine never consults this. The CLI shows it to the operator before a
move. Any Advisor implementation (a remote model, a lookup table) returns a
SafetyAdvice; KeywordAdvisor is the built-in one.
"""

import logging
import re
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Tuple

logger = logging.getLogger("appshift.advisory")


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


@dataclass(frozen=True)
class SafetyAdvice:
    is_safe: bool
    risk_level: RiskLevel
    reason: str
    recommended_action: str

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        return data

    @property
    def safety_score(self) -> int:
        return {RiskLevel.LOW: 95, RiskLevel.MEDIUM: 70, RiskLevel.HIGH: 40}[self.risk_level]


def fallback_advice() -> SafetyAdvice:
    """Advice used when an advisor cannot produce an answer."""
    return SafetyAdvice(
        is_safe=True,
        risk_level=RiskLevel.MEDIUM,
        reason="Could not assess this folder. Generally, roaming profiles are safe to move.",
        recommended_action="Ensure the application is closed before moving.",
    )


class Advisor:
    def advise(self, name: str, path: Path) -> SafetyAdvice:
        raise NotImplementedError


# Known AppData owners: (risk, reason)
KNOWN_FOLDERS: Dict[str, Tuple[RiskLevel, str]] = {
    "npm-cache": (RiskLevel.LOW, "package manager cache, rebuilt on demand"),
    "npm": (RiskLevel.LOW, "global package install directory"),
    "pip": (RiskLevel.LOW, "package manager cache"),
    "nuget": (RiskLevel.LOW, "package manager cache"),
    "yarn": (RiskLevel.LOW, "package manager cache"),
    "code": (RiskLevel.LOW, "editor settings and caches"),
    "jetbrains": (RiskLevel.LOW, "IDE settings and caches"),
    "obsidian": (RiskLevel.LOW, "application settings"),
    "slack": (RiskLevel.MEDIUM, "chat client data; close the client first"),
    "discord": (RiskLevel.MEDIUM, "chat client data; close the client first"),
    "telegram desktop": (RiskLevel.MEDIUM, "chat history"),
    "steam": (RiskLevel.MEDIUM, "game platform data"),
    "docker": (RiskLevel.HIGH, "service data loaded early at boot"),
    "microsoft": (RiskLevel.HIGH, "system component data"),
    "onedrive": (RiskLevel.HIGH, "sync client that tracks its own paths"),
}

_LOW_KEYWORDS = ("cache", "temp", "tmp", "logs", "crashdumps", "thumbnails", "download")
_HIGH_PATTERNS = (r"^packages$", r"^windowsapps$", r"^microsoft\b")


class KeywordAdvisor(Advisor):
    """Risk assessment from folder names alone."""

    def advise(self, name: str, path: Path) -> SafetyAdvice:
        key = name.strip().lower()
        if key in KNOWN_FOLDERS:
            level, why = KNOWN_FOLDERS[key]
            return self._advice(level, f"Known folder: {why}")
        for pattern in _HIGH_PATTERNS:
            if re.match(pattern, key):
                return self._advice(RiskLevel.HIGH, "System-managed directory")
        for keyword in _LOW_KEYWORDS:
            if keyword in key:
                return self._advice(RiskLevel.LOW, f"Cache or temporary data ({keyword})")
        return self._advice(RiskLevel.MEDIUM, "Unknown application data")

    @staticmethod
    def _advice(level: RiskLevel, reason: str) -> SafetyAdvice:
        if level is RiskLevel.HIGH:
            action = "Do not move unless you know the application tolerates junctions."
        elif level is RiskLevel.MEDIUM:
            action = "Close the application before moving and test it afterwards."
        else:
            action = "Safe to move; close the application first."
        return SafetyAdvice(is_safe=level is not RiskLevel.HIGH, risk_level=level,
                            reason=reason, recommended_action=action)


def get_advice(advisor: Advisor, name: str, path: Path) -> SafetyAdvice:
    """Ask ``advisor``, falling back to generic advice if it fails."""
    try:
        return advisor.advise(name, Path(path))
    except Exception as e:
        logger.warning("advisor failed for %s: %s", name, e)
        return fallback_advice()
