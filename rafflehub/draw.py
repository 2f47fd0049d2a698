"""Winner selection for raffle closure."""

from __future__ import annotations

import random
from typing import Optional, Sequence


def draw_winner(
    ticket_numbers: Sequence[str], rng: Optional[random.Random] = None
) -> Optional[str]:
    """Pick one ticket number uniformly at random.

    Every ticket is one entry, so a participant holding two tickets is twice
    as likely to win as a participant holding one. The source is a plain
    pseudo-random generator; no fairness proof is produced.

    Parameters
    ----------
    ticket_numbers : Sequence[str]
        All ticket numbers held in the raffle at draw time.
    rng : Optional[random.Random], default: None
        Generator to draw from; the module-level generator when omitted.

    Returns
    -------
    Optional[str]
        The winning ticket number, or ``None`` when there are no tickets.
    """
    if not ticket_numbers:
        return None
    chooser = rng or random
    return chooser.choice(list(ticket_numbers))
