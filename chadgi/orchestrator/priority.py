"""Priority tiers from issue labels."""

from chadgi.config import PriorityLabels

# Tier number per name; lower runs first
PRIORITY_LEVELS: dict[str, int] = {"critical": 0, "high": 1, "normal": 2, "low": 3}
DEFAULT_PRIORITY = (PRIORITY_LEVELS["normal"], "normal")

# low is checked before normal so an issue labelled both counts as low
_CHECK_ORDER = ("critical", "high", "low", "normal")


class PriorityClassifier:
    """Maps an issue's labels to (priority, name)."""

    def __init__(self, labels: PriorityLabels | None = None):
        labels = labels or PriorityLabels()
        self._labels = {tier: [label.lower() for label in getattr(labels, tier)] for tier in _CHECK_ORDER}

    def classify(self, labels: list[str]) -> tuple[int, str]:
        """
        First tier (critical, high, low, normal) with a matching label wins.

        Unlabelled issues are normal.
        """
        lowered = {label.lower() for label in labels}
        for tier in _CHECK_ORDER:
            if lowered.intersection(self._labels[tier]):
                return PRIORITY_LEVELS[tier], tier
        return DEFAULT_PRIORITY

    def first_label(self, tier: str) -> str | None:
        """The label added when raising an issue to a tier."""
        labels = self._labels.get(tier) or []
        return labels[0] if labels else None
