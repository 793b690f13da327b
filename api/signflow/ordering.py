"""Which signers may act right now.

Pure functions over a signer snapshot; nothing here touches the database.
"""

from typing import List, Sequence

from .models import SigningMode, Signer


def _open(signers: Sequence[Signer]) -> List[Signer]:
    return [s for s in signers if not s.status.is_terminal]


def active_signers(mode: SigningMode, signers: Sequence[Signer]) -> List[Signer]:
    """Parallel: every non-terminal signer. Sequential: the lowest open position."""
    candidates = _open(signers)
    if mode == SigningMode.PARALLEL or not candidates:
        return candidates
    first = min(candidates, key=lambda s: s.position)
    return [first]


def is_active(mode: SigningMode, signers: Sequence[Signer], signer_id: str) -> bool:
    return any(s.id == signer_id for s in active_signers(mode, signers))


def next_position(signers: Sequence[Signer]) -> int:
    taken = [s.position for s in signers if s.position is not None]
    return max(taken) + 1 if taken else 1


def undispatched(mode: SigningMode, signers: Sequence[Signer]) -> List[Signer]:
    # active signers nobody has invited yet; advancing the queue means exactly this
    return [s for s in active_signers(mode, signers) if s.dispatched_at is None]
