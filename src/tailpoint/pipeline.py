from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from tailpoint.errors import ParseError
from tailpoint.follower import Follower
from tailpoint.logformat import FormatPlan
from tailpoint.metrics import KNOWN_FIELDS, AccessRecord, LabelSet, MetricRegistry

logger = logging.getLogger(__name__)

# How long one blocking receive may park a worker thread before the task
# gets a chance to notice cancellation.
RECEIVE_TIMEOUT_S = 0.5


def process_line(text: str, plan: FormatPlan, metrics: MetricRegistry) -> Optional[LabelSet]:
    """Match one line and apply it to ``metrics``.

    Returns the LabelSet that was updated, or None when the line did not
    match and only the parse-error counter moved.
    """
    try:
        entry = plan.match(text)
    except ParseError as e:
        logger.warning("Error while parsing line %r: %s", e.line, e)
        metrics.record_parse_error()
        return None

    logger.debug("Parsed line %r", text)
    return metrics.observe(AccessRecord.from_entry(entry))


def missing_fields(plan: FormatPlan) -> List[str]:
    declared = set(plan.fields)
    return [name for name in KNOWN_FIELDS if name not in declared]


async def consume_lines(follower: Follower, plan: FormatPlan, metrics: MetricRegistry) -> None:
    """Drain the follower's lines in order until it closes."""
    while True:
        item = await asyncio.to_thread(follower.get, RECEIVE_TIMEOUT_S)
        if item is None:
            continue
        if item is Follower.CLOSED:
            logger.info("Follower for %s closed, line consumer exiting", follower.path)
            return
        process_line(item.text, plan, metrics)
