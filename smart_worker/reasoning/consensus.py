"""Majority-vote consensus over nearest-neighbour precedent ids."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass
class MajorityResult(Generic[T]):
    """Outcome of a vote.

    ``winner`` is None when no candidate reached a unique majority, in
    which case ``tied`` is True.
    """

    winner: Optional[T]
    count: int
    total: int
    tied: bool = False


def _default_equals(a, b) -> bool:
    return a == b


def majority_vote(
    values: Sequence,
    equals: Callable[[T, T], bool] = _default_equals,
) -> MajorityResult[T]:
    """Pick the value held by a strict majority of the input.

    Args:
        values: Candidate values, duplicates expected.
        equals: Equality used to group candidates.

    Returns:
        The winner with its count, or a tied result with no winner.

    Raises:
        TypeError: If values is not a list-like sequence.
        ValueError: If values is empty.
    """
    if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
        raise TypeError("majority_vote: values must be a sequence")
    if len(values) == 0:
        raise ValueError("majority_vote: empty input")

    groups: List[List] = []  # [representative, count]
    for value in values:
        for group in groups:
            if equals(group[0], value):
                group[1] += 1
                break
        else:
            groups.append([value, 1])

    total = len(values)
    threshold = total // 2 + 1
    best = max(count for _, count in groups)
    leaders = [rep for rep, count in groups if count == best]

    if len(leaders) == 1 and best >= threshold:
        return MajorityResult(winner=leaders[0], count=best, total=total)
    return MajorityResult(winner=None, count=best, total=total, tied=True)


class ConsensusResolver:
    """Reduces a list of precedent ids to one winning id."""

    def __init__(self, equals: Callable = _default_equals):
        self.equals = equals

    def resolve(self, candidates: Sequence) -> MajorityResult:
        """Vote over candidates; an empty list yields no winner.

        ``majority_vote`` itself rejects empty input, so the resolver
        short-circuits that case instead of calling it.
        """
        if isinstance(candidates, Sequence) and len(candidates) == 0:
            return MajorityResult(winner=None, count=0, total=0, tied=False)
        return majority_vote(candidates, self.equals)
