import pytest

from splitbill.utils.money import allocate_equal, format_rm
from splitbill.utils.queue import generate_queue_number, pickup_time_label


class TestMoney:

    def test_format_rm(self):
        assert format_rm(1600) == "RM 16.00"
        assert format_rm(5) == "RM 0.05"

    def test_allocate_equal_sums_to_total(self):
        shares = allocate_equal(1000, 3)

        assert shares == [334, 333, 333]
        assert sum(shares) == 1000

    def test_allocate_equal_requires_shares(self):
        with pytest.raises(ValueError):
            allocate_equal(1000, 0)


class TestQueueNumber:

    def test_prefix_from_cafeteria_name(self):
        assert generate_queue_number("Kafe Angkasa", 0) == "K01"
        assert generate_queue_number("arked meranti", 11) == "A12"

    def test_default_prefix(self):
        assert generate_queue_number(None, 4) == "A05"
        assert generate_queue_number("  ", 0) == "A01"

    def test_pickup_labels(self):
        assert pickup_time_label("1.5hour") == "In 1.5 hours"
        assert pickup_time_label(None) == "ASAP"
        assert pickup_time_label("tomorrow") == "tomorrow"
