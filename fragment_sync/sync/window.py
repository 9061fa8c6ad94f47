"""Scan window planning for reconciliation passes."""

from fragment_sync.schemas import ScanWindow

DEFAULT_BLOCK_STEP = 500


def plan_window(checkpoint_block: int, chain_head: int, step: int = DEFAULT_BLOCK_STEP) -> ScanWindow:
    """Compute the block range for the next pass.

    The window reaches ``step`` blocks past the checkpoint (capped at the chain
    head) and starts ``2 * step`` blocks before its end, so up to ``step``
    already-folded blocks are rescanned. Logs that a lagging indexer missed on
    the previous pass are picked up here; the fold's replay filter drops the
    ones that were already applied.

    Args:
        checkpoint_block: Last block fully folded into persisted state.
        chain_head: Current chain head block number.
        step: Blocks advanced per pass.

    Returns:
        Inclusive window. ``to_block`` may equal the checkpoint when the
        sync is caught up with the head.
    """
    if step <= 0:
        raise ValueError(f"block step must be positive, got {step}")

    to_block = min(checkpoint_block + step, chain_head)
    from_block = max(to_block - 2 * step, 0)
    return ScanWindow(from_block=from_block, to_block=to_block)
