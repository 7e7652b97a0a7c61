"""Tests for outbound text cleanup and splitting."""

from subgate.communication.outbound import clean_outbound, split_message


class TestCleanOutbound:

    def test_collapses_blank_runs(self):
        assert clean_outbound("a\n\n\n\nb") == "a\n\nb"

    def test_strips(self):
        assert clean_outbound("  hi \n") == "hi"

    def test_empty(self):
        assert clean_outbound("") == ""
        assert clean_outbound(None) == ""


class TestSplitMessage:

    def test_short_message_untouched(self):
        assert split_message("hello", max_length=10) == ["hello"]

    def test_prefers_newlines(self):
        chunks = split_message("line one\nline two", max_length=12)
        assert chunks == ["line one", "line two"]

    def test_falls_back_to_spaces(self):
        chunks = split_message("aaaa bbbb cccc", max_length=10)
        assert chunks == ["aaaa bbbb", "cccc"]

    def test_hard_cut(self):
        chunks = split_message("x" * 25, max_length=10)
        assert chunks == ["x" * 10, "x" * 10, "x" * 5]
