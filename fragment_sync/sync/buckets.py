"""Merge in-batch OHLCV aggregates with persisted candles."""

from collections.abc import Iterable, Mapping

from fragment_sync.schemas import OhlcvBucket

BucketKey = tuple[str, int]


def bucket_key(bucket: OhlcvBucket) -> BucketKey:
    return (bucket.market, bucket.bucket_start)


def merge_bucket(batch: OhlcvBucket, persisted: OhlcvBucket | None) -> OhlcvBucket:
    """Merge one batch aggregate into the persisted candle for the same hour.

    The open price never moves once written. The close always comes from the
    batch: the replay filter guarantees batch trades are later than anything
    already folded for the market. Volumes and trade count add up, which is
    safe because a trade only ever contributes to the batch in which its block
    first passes the checkpoint.
    """
    if persisted is None:
        return batch.model_copy()

    if bucket_key(batch) != bucket_key(persisted):
        raise ValueError(
            f"cannot merge bucket {bucket_key(batch)} into {bucket_key(persisted)}"
        )

    return OhlcvBucket(
        market=batch.market,
        bucket_start=batch.bucket_start,
        open_price=persisted.open_price,
        high_price=max(persisted.high_price, batch.high_price),
        low_price=min(persisted.low_price, batch.low_price),
        close_price=batch.close_price,
        volume=persisted.volume + batch.volume,
        buy_volume=persisted.buy_volume + batch.buy_volume,
        sell_volume=persisted.sell_volume + batch.sell_volume,
        trade_count=persisted.trade_count + batch.trade_count,
    )


def merge_buckets(
    batch: Iterable[OhlcvBucket],
    persisted: Mapping[BucketKey, OhlcvBucket],
) -> list[OhlcvBucket]:
    """Resolve the final upsert for every bucket touched by the batch.

    Args:
        batch: In-batch aggregates from the fold.
        persisted: Currently stored candles keyed by (market, bucket_start).
            Keys with no stored row are simply absent.

    Returns:
        One fully merged candle per touched bucket.
    """
    return [merge_bucket(b, persisted.get(bucket_key(b))) for b in batch]
