"""
Unit tests for event placeholder resolution.
"""

from caseflow.core.models import BusinessEvent
from caseflow.triggers.resolver import EventPlaceholderResolver, find_references, validate_placeholders


def make_event(**payload):
    return BusinessEvent(
        name="DocumentUploaded",
        case_id="C-1",
        module_tag="Documents",
        payload=payload,
    )


class TestEventPlaceholderResolver:
    """Tests for placeholder substitution."""

    def test_event_fields(self):
        resolver = EventPlaceholderResolver(make_event())

        assert resolver.resolve("{{ event.name }} on {{event.case_id}}") == "DocumentUploaded on C-1"

    def test_payload_paths(self):
        resolver = EventPlaceholderResolver(make_event(
            document={"name": "Motion to Compel"},
            files=["a.pdf", "b.pdf"],
        ))

        assert resolver.resolve("Review {{ event.payload.document.name }}") == "Review Motion to Compel"
        assert resolver.resolve("{{ event.payload.files[1] }}") == "b.pdf"

    def test_missing_values_resolve_empty(self):
        resolver = EventPlaceholderResolver(make_event(files=[]))

        assert resolver.resolve("[{{ event.payload.missing }}]") == "[]"
        assert resolver.resolve("[{{ event.payload.files[3] }}]") == "[]"

    def test_nested_structures(self):
        resolver = EventPlaceholderResolver(make_event(kind="motion"))

        resolved = resolver.resolve({"title": "{{ event.payload.kind }}", "tags": ["{{ event.module_tag }}", 3]})

        assert resolved == {"title": "motion", "tags": ["Documents", 3]}

    def test_plain_text_untouched(self):
        resolver = EventPlaceholderResolver(make_event())
        assert resolver.resolve("Review Motion") == "Review Motion"


class TestPlaceholderValidation:
    """Tests for placeholder checks at rule registration."""

    def test_valid_placeholders(self):
        assert validate_placeholders("Review {{ event.payload.name }} for {{ event.case_id }}") == []

    def test_unknown_root(self):
        problems = validate_placeholders("{{ env.SECRET }}")
        assert problems and "Unknown placeholder root" in problems[0]

    def test_unknown_event_field(self):
        problems = validate_placeholders("{{ event.password }}")
        assert problems and "Unknown event field" in problems[0]

    def test_malformed(self):
        problems = validate_placeholders("{{ 1 + 1 }}")
        assert problems and "Malformed" in problems[0]

    def test_find_references(self):
        refs = find_references("{{ event.payload.files[0] }}")

        assert len(refs) == 1
        assert refs[0].root == "event"
        assert refs[0].path == ["payload", "files", 0]
