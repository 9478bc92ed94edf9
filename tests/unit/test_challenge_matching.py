"""Challenge requirement matching."""

from lexrewards.challenges.schemas import EngagementEvent
from lexrewards.challenges.service import challenge_target, matches_requirements


def _event(name="document_view", category="content", **properties) -> EngagementEvent:
    return EngagementEvent(event_name=name, event_category=category, user_id=1, properties=properties)


class TestMatchesRequirements:
    def test_event_name_match(self):
        assert matches_requirements({"event_name": "document_view"}, _event())

    def test_category_match(self):
        assert matches_requirements({"event_category": "content"}, _event(name="page_view"))

    def test_name_or_category(self):
        """Either field is enough."""
        reqs = {"event_name": "consultation_booked", "event_category": "content"}
        assert matches_requirements(reqs, _event())

    def test_no_match(self):
        assert not matches_requirements({"event_name": "consultation_booked"}, _event())

    def test_property_match_all_required(self):
        reqs = {"event_name": "document_view", "property_match": {"practice_area": "family", "format": "pdf"}}
        assert matches_requirements(reqs, _event(practice_area="family", format="pdf"))
        assert not matches_requirements(reqs, _event(practice_area="family", format="docx"))
        assert not matches_requirements(reqs, _event(practice_area="family"))

    def test_empty_requirements_never_match(self):
        assert not matches_requirements({}, _event())
        assert not matches_requirements(None, _event())


class TestChallengeTarget:
    def test_defaults_to_one(self):
        assert challenge_target({"event_name": "x"}) == 1

    def test_count(self):
        assert challenge_target({"count": 5}) == 5

    def test_never_below_one(self):
        assert challenge_target({"count": 0}) == 1
