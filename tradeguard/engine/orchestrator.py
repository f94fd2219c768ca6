from __future__ import annotations

import logging

from tradeguard.engine.classifier import classify
from tradeguard.errors import ClassificationError
from tradeguard.models import ModerationResult

logger = logging.getLogger(__name__)


def analyze_message(text: str, is_auto_reply: bool = False) -> ModerationResult:
    """
    Run the classifier and return a normalized result.

    Both the send gate and the sweeper go through here so the same text
    always gets the same verdict. Any classifier failure surfaces as
    ClassificationError; callers must never treat it as clean.
    """
    try:
        return classify(text, is_auto_reply=is_auto_reply)
    except Exception as e:
        logger.error(f"Classifier failed: {e}", exc_info=True)
        raise ClassificationError("Message could not be checked right now, please retry") from e
