"""Tests for output module."""

import json

import pytest

from logchef_cli.output import OutputHandler, format_error_json, format_json


class TestFormatJson:
    """Tests for format_json function."""

    def test_format_success(self):
        """Test formatting successful response."""
        parsed = json.loads(format_json({"key": "value"}))
        assert parsed["success"] is True
        assert parsed["data"] == {"key": "value"}

    def test_format_non_serializable(self):
        """Test that non-JSON types fall back to str()."""
        from datetime import datetime

        parsed = json.loads(format_json({"at": datetime(2030, 1, 1)}))
        assert parsed["data"]["at"] == "2030-01-01 00:00:00"


class TestFormatErrorJson:
    """Tests for format_error_json function."""

    def test_format_error(self):
        """Test formatting an error with help text."""
        parsed = json.loads(format_error_json(ValueError("bad"), help_text="try again"))
        assert parsed == {
            "success": False,
            "error": {"type": "ValueError", "message": "bad", "help": "try again"},
        }

    def test_no_traceback(self):
        """Test that errors never carry a traceback."""
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            parsed = json.loads(format_error_json(e))
        assert "traceback" not in parsed["error"]
        assert parsed["error"]["help"] == ""


class TestOutputHandler:
    """Tests for OutputHandler class."""

    def test_info_human_to_stdout(self, capsys):
        """Test that progress goes to stdout in human mode."""
        OutputHandler(json_mode=False).info("Waiting...")
        captured = capsys.readouterr()
        assert captured.out == "Waiting...\n"
        assert captured.err == ""

    def test_info_json_to_stderr(self, capsys):
        """Test that progress stays off stdout in JSON mode."""
        OutputHandler(json_mode=True).info("Waiting...")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == "Waiting...\n"

    def test_success_human_message(self, capsys):
        """Test human success output."""
        OutputHandler().success({"a": 1}, human_message="Done")
        assert capsys.readouterr().out == "Done\n"

    def test_success_json(self, capsys):
        """Test JSON success output."""
        OutputHandler(json_mode=True).success({"a": 1}, human_message="Done")
        assert json.loads(capsys.readouterr().out) == {"success": True, "data": {"a": 1}}

    def test_fields_human(self, capsys):
        """Test aligned labels with empty rows skipped."""
        OutputHandler().fields(
            {"context": "prod"},
            [("Context", "prod"), ("Role", None), ("User", "a@b.com")],
        )
        assert capsys.readouterr().out == "Context: prod\nUser:    a@b.com\n"

    def test_fields_json(self, capsys):
        """Test that JSON mode prints the data, not the rows."""
        OutputHandler(json_mode=True).fields({"context": "prod"}, [("Context", "prod")])
        assert json.loads(capsys.readouterr().out)["data"] == {"context": "prod"}

    def test_error_human_exits(self, capsys):
        """Test human error output and exit code."""
        with pytest.raises(SystemExit) as exc_info:
            OutputHandler().error(ValueError("bad"), help_text="try again")

        assert exc_info.value.code == 1
        captured = capsys.readouterr()
        assert "Error: bad" in captured.err
        assert "try again" in captured.err

    def test_error_json_exits(self, capsys):
        """Test JSON error output and exit code."""
        with pytest.raises(SystemExit) as exc_info:
            OutputHandler(json_mode=True).error(ValueError("bad"), error_type="Custom")

        assert exc_info.value.code == 1
        parsed = json.loads(capsys.readouterr().out)
        assert parsed["error"]["type"] == "Custom"
