from __future__ import annotations

from typing import Iterator


def batches(n_items: int, batch_size: int) -> Iterator[slice]:
    """
    Split ``range(n_items)`` into contiguous slices of at most ``batch_size``.

    **Example**:

        list(batches(5, 2))
        # Output:
        # [slice(0, 2), slice(2, 4), slice(4, 5)]
    """
    assert batch_size > 0, "Batch size must be positive."
    for start in range(0, n_items, batch_size):
        yield slice(start, min(start + batch_size, n_items))
