import os
from concurrent.futures import ThreadPoolExecutor

import pytest
from pymongo import MongoClient

from marketplace import sequences
from marketplace.sequences import SequenceGenerator

# Atomicity comes from the server's find_one_and_update; mongomock is not
# thread-safe, so the concurrent check only runs against a real mongod.
MONGO_TEST_URI = os.environ.get("MONGO_TEST_URI")


def test_first_value_is_one(database):
    seq = SequenceGenerator(database["counters"])
    assert seq.current_value(sequences.EVENT) == 0
    assert seq.next_value(sequences.EVENT) == 1


def test_values_are_distinct_and_contiguous(database):
    seq = SequenceGenerator(database["counters"])
    values = [seq.next_value(sequences.TICKET) for _ in range(50)]
    assert values == list(range(1, 51))
    assert seq.current_value(sequences.TICKET) == 50


def test_counters_are_independent_per_name(database):
    seq = SequenceGenerator(database["counters"])
    for _ in range(3):
        seq.next_value(sequences.ORDER)
    assert seq.next_value(sequences.ACCOUNT) == 1
    assert seq.next_value(sequences.ORDER) == 4


def test_two_generators_share_the_persisted_counter(database):
    first = SequenceGenerator(database["counters"])
    second = SequenceGenerator(database["counters"])
    seen = set()
    for _ in range(10):
        seen.add(first.next_value(sequences.USER))
        seen.add(second.next_value(sequences.USER))
    assert seen == set(range(1, 21))


@pytest.mark.skipif(not MONGO_TEST_URI, reason="set MONGO_TEST_URI to run against a real MongoDB")
def test_concurrent_values_are_distinct_on_a_real_server():
    client = MongoClient(MONGO_TEST_URI)
    db = client["marketplace_sequence_test"]
    db["counters"].drop()
    try:
        seq = SequenceGenerator(db["counters"])
        with ThreadPoolExecutor(max_workers=16) as pool:
            values = list(pool.map(lambda _: seq.next_value(sequences.TICKET), range(400)))
        assert sorted(values) == list(range(1, 401))
    finally:
        client.drop_database("marketplace_sequence_test")
        client.close()
