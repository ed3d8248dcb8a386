"""
Channel agreement scoring.

Each sensor carries two independent lasers (channel A and B). How closely
they agree decides whether a reading can be trusted. The confidence score
reproduces the sensor network's own 0-100 "confidence" value so numbers shown
next to ours line up with theirs.
"""

import logging
import math

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 100
# Mean percent differences at or below 25 * 1.6 = 40% cost no confidence.
PENALTY_SCALE = 1.6
PENALTY_OFFSET = 25
# Largest possible |a - b| / ((a + b) / 2) for non-negative readings.
MAX_MEAN_PERCENT_DIFFERENCE = 2.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def mean_percent_difference(a: float, b: float) -> float:
    """
    |a - b| / ((a + b) / 2), as a fraction (0.7 == 70%).

    Two channels both reading zero agree perfectly.
    """
    avg = (a + b) / 2
    if avg == 0:
        return 0.0
    return abs(a - b) / avg


def agreement_confidence(a: float, b: float) -> int:
    """
    Confidence (0-100) that channel readings a and b describe the same air.

    Args:
        a: Channel A PM2.5 (pseudo-average) value.
        b: Channel B PM2.5 (pseudo-average) value.

    Returns:
        100 for identical readings, decreasing monotonically as the channels
        disagree, clamped at 0. Symmetric in a and b.
    """
    avg = (a + b) / 2
    if avg == 0:
        return MAX_CONFIDENCE

    percent_diff = abs(a - b) / avg * 100
    penalty = max(_round_half_up(percent_diff / PENALTY_SCALE) - PENALTY_OFFSET, 0)
    confidence = max(MAX_CONFIDENCE - penalty, 0)
    logger.debug("Agreement a=%.2f b=%.2f diff=%.1f%% confidence=%d", a, b, percent_diff, confidence)
    return confidence
