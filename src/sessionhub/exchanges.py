"""Restrict a session to its last N prompt/response exchanges."""

import dataclasses
from typing import Sequence

from sessionhub.models import Interaction, SessionAggregate, TokenTotals


def filter_last_exchanges(
    interactions: Sequence[Interaction], count: int
) -> tuple[tuple[Interaction, ...], int]:
    """Keep interactions from the count-th most recent prompt onward.

    An exchange starts at a prompt. A non-positive count, or one larger than
    the number of exchanges, keeps everything.

    Returns:
        (retained interactions, number dropped)
    """
    retained = tuple(interactions)
    starts = [i for i, interaction in enumerate(retained) if interaction.type == "prompt"]
    if count <= 0 or not starts or count > len(starts):
        return retained, 0

    start = starts[-count]
    return retained[start:], start


def apply_exchange_filter(aggregate: SessionAggregate, count: int) -> SessionAggregate:
    """Return a new aggregate holding only the last ``count`` exchanges.

    Token totals are recomputed from the retained interactions and the start
    time moves to the first retained timestamp.
    """
    retained, dropped = filter_last_exchanges(aggregate.interactions, count)
    if not dropped:
        return aggregate

    start_time = aggregate.start_time
    if retained and retained[0].timestamp:
        start_time = retained[0].timestamp

    return dataclasses.replace(
        aggregate,
        interactions=retained,
        tokens=TokenTotals.from_interactions(retained),
        start_time=start_time,
        dropped_interactions=aggregate.dropped_interactions + dropped,
    )
