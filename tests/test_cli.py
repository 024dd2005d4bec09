from unittest.mock import patch

import pytest

from edictflow import cli
from edictflow.core.errors import (
    ConfigurationError,
    ExitCode,
    InvalidState,
    NotFound,
    format_error_message,
    main_with_error_handling,
)


def test_sweep_parser_options():
    parser = cli.build_parser()

    args = parser.parse_args(["sweep", "--once", "--interval", "2.5"])

    assert args.command == "sweep"
    assert args.once is True
    assert args.interval == 2.5


def test_main_without_command_prints_help(capsys):
    with patch.object(cli, "configure_logging"):
        assert cli.main([]) == 1
    assert "sweep" in capsys.readouterr().out


def test_main_dispatches_sweep():
    with (
        patch.object(cli, "configure_logging"),
        patch.object(cli, "handle_sweep_command", return_value=0) as handler,
    ):
        assert cli.main(["sweep", "--once"]) == 0
    assert handler.call_args.args[0].once is True


def test_main_maps_errors_to_exit_codes():
    def failing(exc):
        @main_with_error_handling()
        def command() -> int:
            raise exc

        return command()

    assert failing(NotFound("missing")) == ExitCode.NOT_FOUND
    assert failing(InvalidState("busy")) == ExitCode.CONFLICT
    assert failing(ConfigurationError("bad backend")) == ExitCode.CONFIG_ERROR
    assert failing(RuntimeError("boom")) == ExitCode.UNKNOWN_ERROR
    assert failing(KeyboardInterrupt()) == 130


def test_format_error_message():
    err = NotFound("Rule not found", {"rule_id": "r1"})
    assert format_error_message(err) == "Rule not found (rule_id=r1)"
    assert format_error_message(NotFound("plain")) == "plain"


@pytest.mark.parametrize(
    ("error", "status_code"),
    [(NotFound("x"), 404), (InvalidState("x"), 409), (ConfigurationError("x"), 500)],
)
def test_http_status_codes(error, status_code):
    assert error.status_code == status_code
