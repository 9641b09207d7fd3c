"""Helpers for grouping turns into user/assistant exchanges."""

from __future__ import annotations

from typing import Sequence

from .models import Role, Turn

PROTECTED_TAIL = 2


def protected_start(turns: Sequence[Turn]) -> int:
    """Index of the first turn of the protected active exchange.

    The last two turns are protected. When the earliest of them is an
    assistant reply directly preceded by the user turn it answered, that user
    turn is protected too so the pair is never split.
    """
    start = max(0, len(turns) - PROTECTED_TAIL)
    if (
        start > 0
        and turns[start].role == Role.ASSISTANT
        and turns[start - 1].role == Role.USER
    ):
        start -= 1
    return start


def group_units(turns: Sequence[Turn]) -> list[list[Turn]]:
    """Split turns into exchanges.

    A unit starts at each user turn and absorbs the assistant replies that
    follow it. Leading assistant or system turns form their own units.
    """
    units: list[list[Turn]] = []
    for turn in turns:
        if turn.role == Role.ASSISTANT and units and units[-1][0].role == Role.USER:
            units[-1].append(turn)
        else:
            units.append([turn])
    return units


def format_transcript(turns: Sequence[Turn]) -> str:
    """Render turns as ``role: content`` lines."""
    return "\n".join(f"{turn.role.value}: {turn.content}" for turn in turns)
