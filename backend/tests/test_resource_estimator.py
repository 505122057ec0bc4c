"""
Resource estimator tests.

Verifies:
- Budget arithmetic (base + variable + margin) with ceiling rounding
- Monotonicity in input size
- Per-kind rates and the configured ceiling
- Determinism for the 2.19 GiB reference input
"""

import pytest

from mkve_worker.config import DEFAULT_WORKER_CONFIG
from mkve_worker.jobs.models import OperationKind
from mkve_worker.resources import BYTES_PER_GB, estimate


REFERENCE_SIZE = int(2.19 * BYTES_PER_GB)


class TestBudgetArithmetic:
    """Budget components."""

    def test_zero_bytes_is_base_only(self):
        """An empty input needs only the base memory."""
        budget = estimate(0, OperationKind.TRANSCODE)

        assert budget.base_mb == 100
        assert budget.variable_mb == 0
        assert budget.margin_mb == 0
        assert budget.total_mb == 100
        assert budget.within_ceiling is True

    def test_one_gigabyte(self):
        """1 GiB uses exactly the per-GB rates."""
        extract = estimate(BYTES_PER_GB, OperationKind.EXTRACT)
        transcode = estimate(BYTES_PER_GB, OperationKind.TRANSCODE)

        assert (extract.variable_mb, extract.margin_mb, extract.total_mb) == (20, 10, 130)
        assert (transcode.variable_mb, transcode.margin_mb, transcode.total_mb) == (50, 10, 160)

    def test_partial_gigabytes_round_up(self):
        """Fractions of a MB are rounded up, never down."""
        budget = estimate(1, OperationKind.GENERIC)

        assert budget.variable_mb == 1
        assert budget.margin_mb == 1

    def test_total_is_sum_of_parts(self):
        """total = base + variable + margin."""
        budget = estimate(REFERENCE_SIZE, OperationKind.TRANSCODE)

        assert budget.total_mb == budget.base_mb + budget.variable_mb + budget.margin_mb

    def test_extract_cheaper_than_transcode(self):
        """Extraction decodes one stream and scales lower."""
        extract = estimate(REFERENCE_SIZE, OperationKind.EXTRACT)
        transcode = estimate(REFERENCE_SIZE, OperationKind.TRANSCODE)

        assert extract.total_mb < transcode.total_mb
        assert extract.margin_mb == transcode.margin_mb

    def test_kind_accepts_string_value(self):
        """The kind may be passed as its wire value."""
        assert estimate(BYTES_PER_GB, "extract") == estimate(BYTES_PER_GB, OperationKind.EXTRACT)

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            estimate(-1, OperationKind.GENERIC)

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            estimate(BYTES_PER_GB, "remux")


class TestReferenceInput:
    """The 2.19 GiB MKV against a 2048MB ceiling."""

    def test_reference_budget(self):
        """Budget for the reference input is fixed."""
        budget = estimate(REFERENCE_SIZE, OperationKind.EXTRACT, ceiling_mb=2048)

        assert budget.base_mb == 100
        assert budget.variable_mb == 44
        assert budget.margin_mb == 22
        assert budget.total_mb == 166
        assert budget.ceiling_mb == 2048
        assert budget.within_ceiling is True
        assert budget.describe() == "166MB required (2048MB ceiling)"

    def test_fractional_size_floored(self):
        """A size computed as 2.19 * 2**30 is floored to whole bytes."""
        budget = estimate(2.19 * 2 ** 30, "extract", 2048)

        assert budget.input_size_bytes == REFERENCE_SIZE
        assert budget == estimate(REFERENCE_SIZE, OperationKind.EXTRACT, ceiling_mb=2048)

    @pytest.mark.parametrize("size", [float("nan"), float("inf")])
    def test_non_finite_size_rejected(self, size):
        with pytest.raises(ValueError):
            estimate(size, OperationKind.EXTRACT)

    def test_reference_budget_reproducible(self):
        """The same inputs always yield the same budget."""
        budgets = [estimate(REFERENCE_SIZE, OperationKind.EXTRACT, ceiling_mb=2048) for _ in range(5)]

        assert all(b == budgets[0] for b in budgets)


class TestCeiling:
    """Admission gate."""

    def test_over_ceiling(self):
        """A budget above the ceiling is not within it."""
        budget = estimate(REFERENCE_SIZE, OperationKind.TRANSCODE, ceiling_mb=150)

        assert budget.within_ceiling is False

    def test_exactly_at_ceiling(self):
        """total == ceiling is still admitted."""
        budget = estimate(BYTES_PER_GB, OperationKind.EXTRACT, ceiling_mb=130)

        assert budget.within_ceiling is True

    def test_default_ceiling_from_config(self):
        """Without an explicit ceiling the configured one applies."""
        config = DEFAULT_WORKER_CONFIG.with_updates(memory_ceiling_mb=120)
        budget = estimate(BYTES_PER_GB, OperationKind.EXTRACT, config=config)

        assert budget.ceiling_mb == 120
        assert budget.within_ceiling is False

    def test_configured_rates(self):
        """Base, per-GB and margin rates come from configuration."""
        config = DEFAULT_WORKER_CONFIG.with_updates(
            base_memory_mb=10,
            per_gb_rate_mb={"extract": 1, "transcode": 2, "generic": 3},
            margin_rate_per_gb_mb=0,
        )
        budget = estimate(4 * BYTES_PER_GB, OperationKind.GENERIC, config=config)

        assert budget.total_mb == 10 + 12


class TestMonotonicity:
    """Larger inputs never need less memory."""

    @pytest.mark.parametrize("kind", list(OperationKind))
    def test_monotonic_in_size(self, kind):
        sizes = [0, 1, 1023, 1024 ** 2, 512 * 1024 ** 2, BYTES_PER_GB, REFERENCE_SIZE, 3 * BYTES_PER_GB, 40 * BYTES_PER_GB]
        totals = [estimate(size, kind).total_mb for size in sizes]

        assert totals == sorted(totals)
