"""
Unit tests for the telemetry preview parser.
"""

from pitwall.core.telemetry.preview import MAX_CHARACTERS, MAX_PREVIEW_ROWS, detect_delimiter, parse_preview


class TestDetectDelimiter:

    def test_comma_wins_over_tab(self):
        assert detect_delimiter("a,b\tc") == ","

    def test_tab(self):
        assert detect_delimiter("time\tspeed") == "\t"

    def test_space_is_the_fallback(self):
        assert detect_delimiter("time speed") == " "
        assert detect_delimiter("single") == " "


class TestParsePreview:

    def test_comma_file(self):
        preview = parse_preview("a,b\n1,2\n")

        assert preview.delimiter == ","
        assert preview.headers == ["a", "b"]
        assert preview.rows == [["1", "2"]]
        assert preview.raw_sample == "a,b\n1,2"
        assert preview.truncated is False

    def test_tab_file_with_crlf_and_blank_lines(self):
        preview = parse_preview("t\tv\r\n\r\n 0\t1 \r\n")

        assert preview.delimiter == "\t"
        assert preview.headers == ["t", "v"]
        assert preview.rows == [["0", "1"]]

    def test_empty_input(self):
        preview = parse_preview("")

        assert preview.headers == []
        assert preview.rows == []
        assert preview.raw_sample == ""
        assert preview.truncated is False

    def test_whitespace_only_input(self):
        preview = parse_preview("\n  \n\t\n")

        assert preview.headers == []
        assert preview.truncated is False

    def test_row_limit_marks_truncated(self):
        text = "h\n" + "\n".join(str(i) for i in range(25))

        preview = parse_preview(text)

        assert len(preview.rows) == MAX_PREVIEW_ROWS
        assert preview.rows[-1] == [str(MAX_PREVIEW_ROWS - 1)]
        assert preview.truncated is True

    def test_exactly_row_limit_is_not_truncated(self):
        text = "h\n" + "\n".join(str(i) for i in range(MAX_PREVIEW_ROWS))

        assert parse_preview(text).truncated is False

    def test_oversized_input_is_truncated(self):
        text = "a,b\n1,2\n" + "x" * (MAX_CHARACTERS + 10)

        preview = parse_preview(text)

        assert preview.truncated is True
        assert preview.headers == ["a", "b"]
        assert len(preview.raw_sample) <= MAX_CHARACTERS

    def test_to_dict_uses_api_field_names(self):
        data = parse_preview("a,b\n1,2").to_dict()

        assert data == {
            "delimiter": ",",
            "headers": ["a", "b"],
            "rows": [["1", "2"]],
            "rawSample": "a,b\n1,2",
            "truncated": False,
        }
