from __future__ import annotations

# Ascending (seconds, label) pairs used for grace-period countdown warnings.
THRESHOLDS: tuple[tuple[int, str], ...] = (
    (60, "1 minute"),
    (120, "2 minutes"),
    (180, "3 minutes"),
    (240, "4 minutes"),
    (300, "5 minutes"),
    (600, "10 minutes"),
    (900, "15 minutes"),
    (1800, "30 minutes"),
    (3600, "1 hour"),
    (7200, "2 hours"),
)


def pick_threshold(seconds_until: int) -> tuple[int, str]:
    """Smallest threshold strictly above ``seconds_until``, else the largest one."""
    for threshold in THRESHOLDS:
        if threshold[0] > seconds_until:
            return threshold
    return THRESHOLDS[-1]
