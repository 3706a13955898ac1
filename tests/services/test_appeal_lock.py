"""Per-appeal critical sections."""

import threading
import time
from uuid import uuid4

from guardian_kernel.services.appeal_lock import AppealLockRegistry


class TestAppealLockRegistry:

    def test_reentrant(self):
        locks = AppealLockRegistry()
        appeal_id = uuid4()
        with locks.section(appeal_id):
            with locks.section(appeal_id):
                assert len(locks) == 1
        assert len(locks) == 0

    def test_uuid_and_string_share_a_section(self):
        locks = AppealLockRegistry()
        appeal_id = uuid4()
        with locks.section(appeal_id), locks.section(str(appeal_id)):
            assert len(locks) == 1

    def test_entries_discarded_after_exception(self):
        locks = AppealLockRegistry()
        try:
            with locks.section("a-1"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert len(locks) == 0

    def test_same_appeal_is_serialised(self):
        locks = AppealLockRegistry()
        inside = []
        overlaps = []

        def worker():
            with locks.section("a-1"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert overlaps == []
        assert len(locks) == 0

    def test_different_appeals_do_not_block(self):
        locks = AppealLockRegistry()
        entered = threading.Event()

        def other():
            with locks.section("a-2"):
                entered.set()

        with locks.section("a-1"):
            t = threading.Thread(target=other)
            t.start()
            assert entered.wait(timeout=5)
            t.join(timeout=5)
