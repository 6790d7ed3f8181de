"""Tests for batch planning."""

from pathlib import Path

import pytest

from sitekv.config.schema import KVLimits
from sitekv.deploy.catalog import RemoteCatalog, RemoteRecord
from sitekv.deploy.inventory import SiteFile
from sitekv.deploy.planner import BatchPlanner


def site_file(index, size=10, fingerprint=None):
    key = f"page-{index:05d}.html"
    return SiteFile(
        key=key,
        fingerprint=fingerprint or f"fp-{index}",
        size_bytes=size,
        path=Path("/nonexistent") / key,
    )


def synthetic_files(count, size=10):
    for index in range(count):
        yield site_file(index, size)


class TestBatchPlanner:
    """Test greedy batch packing."""

    def test_item_limit_splits_large_sites(self):
        planner = BatchPlanner(KVLimits(max_batch_items=10_000))

        batches = list(planner.plan(synthetic_files(25_000)))

        assert [len(b) for b in batches] == [10_000, 10_000, 5_000]
        assert [b.sequence for b in batches] == [0, 1, 2]

    def test_byte_limit(self):
        planner = BatchPlanner(KVLimits(max_batch_items=100, max_batch_bytes=100))

        batches = list(planner.plan(synthetic_files(25, size=30)))

        assert [len(b) for b in batches] == [3] * 8 + [1]
        assert all(b.size_bytes <= 100 for b in batches)

    def test_every_file_is_planned_once_in_order(self):
        planner = BatchPlanner(KVLimits(max_batch_items=7, max_batch_bytes=55))
        files = list(synthetic_files(50, size=9))

        batches = list(planner.plan(files))
        planned = [f.key for b in batches for f in b.files]

        assert planned == [f.key for f in files]
        assert all(len(b) <= 7 and b.size_bytes <= 55 for b in batches)

    def test_oversized_file_is_isolated(self):
        planner = BatchPlanner(KVLimits(max_batch_bytes=100))
        files = [site_file(0, 40), site_file(1, 40), site_file(2, 500), site_file(3, 40)]

        batches = list(planner.plan(files))

        assert [b.keys for b in batches] == [
            ["page-00000.html", "page-00001.html"],
            ["page-00002.html"],
            ["page-00003.html"],
        ]
        assert [b.oversized for b in batches] == [False, True, False]

    def test_single_put_mode(self):
        planner = BatchPlanner(KVLimits(), use_bulk_upload=False)

        batches = list(planner.plan(synthetic_files(3)))

        assert [len(b) for b in batches] == [1, 1, 1]
        assert all(b.is_single for b in batches)

    def test_unchanged_files_are_skipped(self):
        catalog = RemoteCatalog({
            "page-00000.html": RemoteRecord("page-00000.html", "fp-0"),
            "page-00001.html": RemoteRecord("page-00001.html", "stale"),
            "page-00002.html": RemoteRecord("page-00002.html", None),
        })
        planner = BatchPlanner(KVLimits(), catalog=catalog)
        skipped = []

        batches = list(planner.plan(synthetic_files(4), on_skip=lambda f: skipped.append(f.key)))

        assert skipped == ["page-00000.html"]
        assert batches[0].keys == ["page-00001.html", "page-00002.html", "page-00003.html"]

    def test_no_batches_when_everything_is_current(self):
        catalog = RemoteCatalog({f"page-{i:05d}.html": RemoteRecord(f"page-{i:05d}.html", f"fp-{i}") for i in range(3)})
        planner = BatchPlanner(KVLimits(), catalog=catalog)

        assert list(planner.plan(synthetic_files(3))) == []

    def test_plan_is_lazy(self):
        consumed = []

        def files():
            for f in synthetic_files(30):
                consumed.append(f.key)
                yield f

        batches = BatchPlanner(KVLimits(max_batch_items=10)).plan(files())
        first = next(batches)

        assert len(first) == 10
        assert len(consumed) == 11

    @pytest.mark.parametrize("count", [0, 1])
    def test_small_inputs(self, count):
        batches = list(BatchPlanner(KVLimits()).plan(synthetic_files(count)))
        assert len(batches) == count
