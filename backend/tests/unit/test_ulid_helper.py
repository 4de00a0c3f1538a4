import re

from app.core.ulid_helper import ULID_PATTERN, generate_ulid, is_valid_ulid


class TestUlidHelper:
    def test_generated_ids_match_the_path_pattern(self):
        value = generate_ulid()

        assert re.match(ULID_PATTERN, value)
        assert is_valid_ulid(value)

    def test_ids_are_unique(self):
        assert len({generate_ulid() for _ in range(50)}) == 50

    def test_rejects_garbage(self):
        assert not is_valid_ulid("not-a-ulid")
        assert not re.match(ULID_PATTERN, "not-a-ulid")
