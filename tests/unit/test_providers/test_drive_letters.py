# SPDX-License-Identifier: LGPL-3.0-or-later
import pytest

from winbuilder.core.exceptions import TransientFailure
from winbuilder.providers.drive_letters import DriveLetterAllocator


@pytest.mark.unit
class TestDriveLetterAllocator:

    def test_first_free_letter(self, fake_logger, no_sleep):
        sleep, slept = no_sleep
        assigned = []
        alloc = DriveLetterAllocator(
            fake_logger, in_use=lambda: {"W", "C"}, visible=lambda l: True, sleep=sleep
        )

        letter = alloc.assign(assigned.append)

        assert letter == "V"
        assert assigned == ["V"]
        assert slept == []

    def test_moves_to_next_letter_when_not_visible(self, fake_logger, no_sleep):
        sleep, slept = no_sleep
        assigned = []
        alloc = DriveLetterAllocator(
            fake_logger, in_use=set, visible=lambda l: l == "V", sleep=sleep
        )

        letter = alloc.assign(assigned.append)

        assert letter == "V"
        assert assigned == ["W", "V"]
        assert len(slept) == 1

    def test_assign_error_is_retried(self, fake_logger, no_sleep):
        sleep, slept = no_sleep
        calls = []

        def flaky(letter):
            calls.append(letter)
            if len(calls) == 1:
                raise OSError("volume busy")

        alloc = DriveLetterAllocator(fake_logger, pool="WV", in_use=set, visible=lambda l: True, sleep=sleep)

        assert alloc.assign(flaky) == "V"
        assert calls == ["W", "V"]

    def test_pool_exhausted(self, fake_logger, no_sleep):
        sleep, slept = no_sleep
        alloc = DriveLetterAllocator(
            fake_logger, pool=["W", "V"], in_use=lambda: {"W", "V"}, max_attempts=2, sleep=sleep
        )

        with pytest.raises(TransientFailure, match="No free drive letter"):
            alloc.assign(lambda l: None)
        assert len(slept) == 1

    def test_gives_up_after_max_attempts(self, fake_logger, no_sleep):
        sleep, slept = no_sleep
        alloc = DriveLetterAllocator(
            fake_logger, in_use=set, visible=lambda l: False, max_attempts=3, sleep=sleep
        )

        with pytest.raises(TransientFailure, match="not visible"):
            alloc.assign(lambda l: None)
        assert len(slept) == 2
