"""
Unit tests for per-key locking.
"""

import threading

from aves.core.locks import KeyedLocks


class TestKeyedLocks:
    def test_lock_exists_only_while_held(self):
        locks = KeyedLocks()

        with locks.hold("learner-1"):
            assert len(locks) == 1
            with locks.hold("learner-1"):
                assert len(locks) == 1

        assert len(locks) == 0

    def test_many_distinct_keys_do_not_accumulate(self):
        locks = KeyedLocks()

        for i in range(1000):
            with locks.hold(("learner", i)):
                pass

        assert len(locks) == 0

    def test_hold_many_releases_every_key(self):
        locks = KeyedLocks()

        with locks.hold_many(["b", "a", "b", "c"]):
            assert len(locks) == 3

        assert len(locks) == 0

    def test_lock_released_when_block_raises(self):
        locks = KeyedLocks()

        try:
            with locks.hold("k"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass

        assert len(locks) == 0

    def test_waiter_keeps_entry_alive_and_serializes(self):
        locks = KeyedLocks()
        entered = threading.Event()
        release = threading.Event()
        order = []

        def first():
            with locks.hold("k"):
                entered.set()
                release.wait(5)
                order.append("first")

        def second():
            entered.wait(5)
            with locks.hold("k"):
                order.append("second")

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for t in threads:
            t.start()
        entered.wait(5)
        release.set()
        for t in threads:
            t.join()

        assert order == ["first", "second"]
        assert len(locks) == 0

    def test_parallel_keys_are_cleaned_up(self):
        locks = KeyedLocks()
        counter = {"value": 0}

        def worker(n):
            for i in range(200):
                with locks.hold(i % 7):
                    counter["value"] += 1

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter["value"] == 1600
        assert len(locks) == 0
