"""AwardableRef construction."""

from dataclasses import dataclass

import pytest

from funlab.gamification.awardable import AwardableRef
from funlab.gamification.errors import InvalidArgumentError


@dataclass
class Guild:
    id: int
    awardable_type: str = "Clan"


class Anonymous:
    id = None


class TestAwardableRef:
    def test_class_name_tag(self, user):
        assert AwardableRef.of(user) == AwardableRef("User", 1)

    def test_explicit_tag(self):
        assert AwardableRef.of(Guild(7)) == AwardableRef("Clan", 7)

    def test_passthrough(self):
        ref = AwardableRef("Team", 3)
        assert AwardableRef.of(ref) is ref

    def test_missing_id(self):
        with pytest.raises(InvalidArgumentError):
            AwardableRef.of(Anonymous())

    def test_str(self):
        assert str(AwardableRef("User", 1)) == "User:1"
