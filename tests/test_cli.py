import io
import sys
from unittest.mock import MagicMock

from tapedbg import cli
from tapedbg.client import ClientConfig
from tapedbg.device import OP_HALT, OP_PRTC
from tapedbg.protocol import EndOfProgram, Output

from tests.helpers import decode_all, program


def _image(tmp_path, *ops):
    path = tmp_path / "prog.bin"
    path.write_bytes(program(*ops))
    return path


def test_parser_defaults(monkeypatch):
    monkeypatch.setenv("TAPEDBG_LOG", "DEBUG")
    args = cli.build_arg_parser().parse_args(["run", "prog.bin", "--max-steps", "9"])
    assert args.log_level == "DEBUG"
    assert args.max_steps == 9
    assert not args.piped
    args = cli.build_arg_parser().parse_args(["debug", "prog.bin"])
    assert args.timeout == 5.0


def test_run_prints_program_output(tmp_path, capsys):
    path = _image(tmp_path, OP_PRTC, "h", OP_PRTC, "i", OP_HALT)
    assert cli.main(["run", str(path)]) == 0
    assert capsys.readouterr().out == "hi"


def test_run_reports_crash(tmp_path, capsys):
    path = _image(tmp_path, 0xFF)
    assert cli.main(["run", str(path)]) == 1
    assert "crash" in capsys.readouterr().err


def test_missing_program_is_an_error(tmp_path, capsys):
    assert cli.main(["run", str(tmp_path / "absent.bin")]) == 2
    assert cli.main(["debug", str(tmp_path / "absent.bin")]) == 2
    assert capsys.readouterr().err.count("tapedbg:") == 2


def test_piped_run_speaks_protocol(tmp_path, monkeypatch):
    path = _image(tmp_path, OP_PRTC, "h", OP_HALT)
    stdin = io.TextIOWrapper(io.BytesIO(b"ee"))
    stdout = io.TextIOWrapper(io.BytesIO())
    monkeypatch.setattr(sys, "stdin", stdin)
    monkeypatch.setattr(sys, "stdout", stdout)
    assert cli.main(["run", "--piped", str(path)]) == 0
    assert decode_all(stdout.buffer.getvalue()) == [Output("h"), EndOfProgram()]


def test_piped_crash_exit_status(tmp_path, monkeypatch):
    path = _image(tmp_path, 0xFF)
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(b"e")))
    monkeypatch.setattr(sys, "stdout", io.TextIOWrapper(io.BytesIO()))
    assert cli.main(["run", "--piped", str(path)]) == 1


def test_debug_spawns_device_and_runs_repl(tmp_path, monkeypatch):
    path = _image(tmp_path, OP_HALT)
    client_cls = MagicMock()
    repl_cls = MagicMock()
    repl_cls.return_value.run.return_value = 0
    monkeypatch.setattr(cli, "DeviceClient", client_cls)
    monkeypatch.setattr(cli, "DebuggerREPL", repl_cls)
    history = tmp_path / "hist"
    assert cli.main(["debug", str(path), "--timeout", "1.5", "--history", str(history)]) == 0
    client_cls.spawn.assert_called_once_with(path, ClientConfig(reply_timeout=1.5))
    repl_cls.assert_called_once_with(client_cls.spawn.return_value, history_path=history)


class _ClosedPipe(io.BytesIO):
    def write(self, data):
        raise BrokenPipeError("pipe closed")


def test_piped_run_with_closed_stdout_exits_cleanly(tmp_path, monkeypatch, capsys):
    path = _image(tmp_path, OP_PRTC, "h", OP_HALT)
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(b"e")))
    monkeypatch.setattr(sys, "stdout", io.TextIOWrapper(_ClosedPipe()))
    assert cli.main(["run", "--piped", str(path)]) == 2
    assert "tapedbg: write failed" in capsys.readouterr().err
