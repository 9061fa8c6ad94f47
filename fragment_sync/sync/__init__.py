"""Reconciliation core: window planning, event fold and candle merging."""

from fragment_sync.sync.buckets import merge_bucket, merge_buckets
from fragment_sync.sync.fold import (
    BUCKET_SECONDS,
    blocks_to_resolve,
    bucket_start,
    filter_new_logs,
    fold_buckets,
    fold_trades,
)
from fragment_sync.sync.window import DEFAULT_BLOCK_STEP, plan_window

__all__ = [
    "BUCKET_SECONDS",
    "DEFAULT_BLOCK_STEP",
    "blocks_to_resolve",
    "bucket_start",
    "filter_new_logs",
    "fold_buckets",
    "fold_trades",
    "merge_bucket",
    "merge_buckets",
    "plan_window",
]
