import pytest

from shared.validators import parse_page, parse_string_list


class TestParseStringList:
    def test_json_array_string(self):
        assert parse_string_list('["http://a.com","http://b.com"]') == ["http://a.com", "http://b.com"]

    def test_comma_separated_with_whitespace(self):
        assert parse_string_list("http://a.com , http://b.com") == ["http://a.com", "http://b.com"]

    def test_passthrough_list(self):
        origins = ["http://a.com"]
        assert parse_string_list(origins) == origins

    def test_empty_string_raises_even_when_empty_allowed(self):
        with pytest.raises(ValueError, match="must not be empty"):
            parse_string_list("  ", allow_empty=True)

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError, match="Invalid JSON array"):
            parse_string_list("[not valid json")

    def test_json_mixed_types_array_raises(self):
        with pytest.raises(ValueError, match="must be an array of strings"):
            parse_string_list('["http://a.com", 123]')

    def test_empty_list_raises_by_default(self):
        with pytest.raises(ValueError, match="must not be empty"):
            parse_string_list("[]")

    def test_empty_list_allowed(self):
        assert parse_string_list("[]", allow_empty=True) == []
        assert parse_string_list(",,", allow_empty=True) == []


class TestParsePage:
    def test_defaults_when_missing(self):
        assert parse_page(None, None, default_limit=50, max_limit=100) == (50, 0)

    def test_blank_strings_use_defaults(self):
        assert parse_page("", "", default_limit=20, max_limit=100) == (20, 0)

    def test_parses_query_strings(self):
        assert parse_page("10", "30", default_limit=50, max_limit=100) == (10, 30)

    def test_clamps_to_max(self):
        assert parse_page(500, 0, default_limit=50, max_limit=100) == (100, 0)

    @pytest.mark.parametrize(
        ("limit", "offset", "message"),
        [
            ("abc", None, "must be integers"),
            (None, "1.5", "must be integers"),
            (0, None, "at least 1"),
            (-3, None, "at least 1"),
            (None, -1, "must not be negative"),
        ],
    )
    def test_rejects_invalid(self, limit, offset, message):
        with pytest.raises(ValueError, match=message):
            parse_page(limit, offset, default_limit=50, max_limit=100)
