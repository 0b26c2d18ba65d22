#!/usr/bin/env python3
# bflive_repl.py
#
# Ligne de commande bflive :
#   bflive run  [-e CODE] [-i INPUT] [-a BYTE]   -> exécution directe, sortie sur stdout
#   bflive live [-i INPUT] [-a BYTE] [--tick S]  -> REPL prompt_toolkit sur un AsyncInterpreter
#   bflive generate MODE [-n]                    -> texte (stdin) -> programme qui l'affiche (stdout)
#   bflive --test                                -> suites unittest de tous les modules
#
# En mode live, chaque ligne tapée est un programme : le REPL appelle
# AsyncInterpreter.restart(ligne, input, auto_input). Les lignes qui
# commencent par ':' sont des commandes du REPL (:help pour la liste).
#
# Particularité : REPL multi-threadé
#   - thread principal : PromptSession (lecture des lignes)
#   - thread de fond   : poll de state() toutes les `tick` secondes,
#                        affichage des transitions de statut et de la sortie
#   - worker de l'AsyncInterpreter : exécute le programme

from __future__ import annotations

import argparse
import codecs
import io
import logging
import os
import shlex
import sys
import threading
import time
import unittest
from contextlib import redirect_stdout
from typing import BinaryIO, List, Optional, TextIO
from unittest import mock

from bflive_generate import GENERATE_MODES, generate
from bflive_runtime import AsyncInterpreter, State, Status, StatusKind
from bflive_sync import PoisonedError
from bflive_vm_core import Interpreter, InterpreterError

log = logging.getLogger(__name__)

DEFAULT_TICK = 0.05
DEFAULT_LIVE_AUTO_INPUT = 0
DEFAULT_TAPE_WINDOW = 16
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV = "BFLIVE_LOG_LEVEL"

REPL_COMMANDS = [":input", ":auto", ":state", ":tape", ":help", ":quit"]

TEST_MODULES = [
    "bflive_tape", "bflive_vm_core", "bflive_sync", "bflive_runtime", "bflive_generate", "bflive_repl",
]


def configure_logging(verbosity: int = 0) -> None:
    """-v -> INFO, -vv -> DEBUG ; sinon $BFLIVE_LOG_LEVEL ou WARNING."""
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        name = os.environ.get(LOG_LEVEL_ENV, "WARNING").upper()
        level = getattr(logging, name, logging.WARNING)
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def parse_byte(text: str) -> int:
    """Octet en décimal, 0x.. ou caractère seul ('A')."""
    if len(text) == 1 and not text.isdigit():
        value = ord(text)
    else:
        try:
            value = int(text, 0)
        except ValueError:
            raise argparse.ArgumentTypeError(f"not a byte: {text!r}") from None
    if not 0 <= value <= 0xFF:
        raise argparse.ArgumentTypeError(f"byte out of range: {value}")
    return value


# ======================================================================
# bflive run
# ======================================================================

def run_script(
    code: bytes,
    input: bytes = b"",
    auto_input: Optional[int] = None,
    *,
    out: Optional[BinaryIO] = None,
    err: Optional[TextIO] = None,
    stdin: Optional[BinaryIO] = None,
) -> int:
    """
    Exécute `code` jusqu'au bout dans le thread courant et écrit la sortie.
    Renvoie le code de sortie du process (0 ou 1).
    """
    out = out if out is not None else sys.stdout.buffer
    err = err if err is not None else sys.stderr

    interp = Interpreter(code, input, auto_input, stdin=stdin)
    log.info("running %d instructions", len(interp.instructions))
    try:
        interp.run()
    except InterpreterError as e:
        out.write(interp.output_bytes())
        out.flush()
        err.write(f"error: {e}\n")
        return 1
    out.write(interp.output_bytes())
    out.flush()
    return 0


# ======================================================================
# bflive live
# ======================================================================

class LiveREPL:
    """
    REPL texte par-dessus un AsyncInterpreter.

    - une ligne normale remplace le programme en cours (restart)
    - :input / :auto règlent l'entrée des prochains runs
    - :state / :tape affichent le dernier snapshot publié
    - un thread de fond poll state() et affiche la sortie au fil de l'eau
    """

    def __init__(
        self,
        input: bytes = b"",
        auto_input: Optional[int] = DEFAULT_LIVE_AUTO_INPUT,
        tick: float = DEFAULT_TICK,
    ) -> None:
        self.ai = AsyncInterpreter()
        self.input: bytes = input
        self.auto_input: Optional[int] = auto_input
        self.tick: float = tick
        self.code: bytes = b""

        # message FATAL_ERROR : le REPL refuse toute nouvelle commande
        self.fatal: Optional[str] = None

        self._last_status: Optional[Status] = None
        self._printed: int = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        # sérialise poll_once() et load_program() (compteur de sortie)
        self._poll_lock = threading.Lock()
        self._print_lock = threading.Lock()

        self._stop_event: Optional[threading.Event] = None
        self._poll_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Utilitaires internes
    # ------------------------------------------------------------------

    def _print(self, text: str) -> None:
        with self._print_lock:
            sys.stdout.write(text)
            sys.stdout.flush()

    def _prompt_text(self) -> str:
        return f"[{self.ai.state().status}] bflive> "

    def poll_once(self) -> State:
        """
        Lit state(), affiche la sortie nouvelle et le statut s'il a changé.
        """
        with self._poll_lock:
            st = self.ai.state()

            if len(st.output) > self._printed:
                chunk = st.output[self._printed:]
                self._printed = len(st.output)
                text = self._decoder.decode(chunk)
                if text:
                    self._print(text)

            if st.status != self._last_status:
                self._last_status = st.status
                if st.status.is_fatal:
                    self.fatal = st.status.message
                    self._print(f"\n[FATAL] {st.status.message}; the interpreter must be restarted (exit).\n")
                elif st.status.is_error:
                    self._print(f"\n[{st.status}] {st.status.message}\n")
                elif st.status.kind in (StatusKind.DONE, StatusKind.WAITING_FOR_INPUT):
                    self._print(f"\n[{st.status}]\n")
            return st

    def _poll_worker(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(self.tick)

    def _start_poller(self) -> None:
        self._stop_event = threading.Event()
        self._poll_thread = threading.Thread(target=self._poll_worker, name="bflive-poll", daemon=True)
        self._poll_thread.start()

    def _stop_poller(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=1.0)

    # ------------------------------------------------------------------
    # Programmes et commandes
    # ------------------------------------------------------------------

    def load_program(self, code: bytes) -> None:
        with self._poll_lock:
            try:
                self.ai.restart(code, self.input, self.auto_input)
            except PoisonedError as e:
                self.fatal = str(e)
                self._print(f"[FATAL] {e}; the interpreter must be restarted (exit).\n")
                return
            self.code = code
            self._printed = 0
            self._last_status = None
            self._decoder.reset()
        log.info("restarted with %d bytes of code", len(code))

    def handle_line(self, line: str) -> None:
        stripped = line.strip()
        if self.fatal is not None:
            if stripped.split(" ", 1)[0] in (":quit", ":exit"):
                raise SystemExit(1)
            self._print(f"interpreter is unusable ({self.fatal}); exit with :quit\n")
            return
        if stripped.startswith(":"):
            self._handle_command(line)
            return
        self.load_program(line.encode("utf-8"))

    def _handle_command(self, line: str) -> None:
        # :input prend le texte brut (espaces compris) après la commande
        cmd, _, rest = line.strip("\r\n").lstrip().partition(" ")
        if cmd == ":input":
            self.input = rest.encode("utf-8")
            self._print(f"input = {self.input!r} (used by the next run)\n")
            return

        try:
            args = shlex.split(rest)
        except ValueError as e:
            self._print(f"parse error: {e}\n")
            return

        if cmd == ":auto":
            if not args:
                self._print(f"auto-input = {self.auto_input!r}\n")
                return
            if args[0] == "off":
                self.auto_input = None
                self._print("auto-input off: ',' may block the worker on stdin\n")
                return
            try:
                self.auto_input = parse_byte(args[0])
            except argparse.ArgumentTypeError as e:
                self._print(f"usage: :auto BYTE|off ({e})\n")
                return
            self._print(f"auto-input = {self.auto_input}\n")
            return

        if cmd == ":state":
            st = self.ai.state()
            self._print(
                f"status={st.status}"
                + (f" ({st.status.message})" if st.status.message else "")
                + f" output={st.output!r} cursor={st.tape.cursor} len={len(st.tape)}\n"
            )
            return

        if cmd == ":tape":
            st = self.ai.state()
            try:
                offset = int(args[0]) if args else max(0, st.tape.cursor - DEFAULT_TAPE_WINDOW // 2)
                count = int(args[1]) if len(args) > 1 else DEFAULT_TAPE_WINDOW
                cells = st.tape.window(offset, count)
            except ValueError:
                self._print("usage: :tape [OFFSET [COUNT]]\n")
                return
            items = []
            for i, c in enumerate(cells, start=offset):
                items.append(f"[{c.value()}]" if i == st.tape.cursor else str(c.value()))
            self._print(f"cursor={st.tape.cursor} len={len(st.tape)} @{offset}: {' '.join(items)}\n")
            return

        if cmd in (":quit", ":exit"):
            raise SystemExit(0)

        if cmd not in (":help", ":?"):
            self._print(f"unknown command: {cmd!r}\n")
        self._print_help()

    def _print_help(self) -> None:
        self._print(
            "Type a program to (re)start it. Commands:\n"
            "  :input TEXT          - input queue for the next runs\n"
            "  :auto BYTE|off       - fallback byte for ',' when the queue is empty\n"
            "  :state               - show the last published state\n"
            "  :tape [OFF [COUNT]]  - show tape cells around the cursor\n"
            "  :quit                - exit\n"
        )

    # ------------------------------------------------------------------
    # Boucle principale (PromptSession + patch_stdout)
    # ------------------------------------------------------------------

    def run(self) -> int:
        """
        Boucle REPL interactive basée sur prompt_toolkit, avec complétion
        des commandes :input, :auto, :state, :tape, :help, :quit.
        """
        try:
            from prompt_toolkit import PromptSession
            from prompt_toolkit.completion import WordCompleter
            from prompt_toolkit.patch_stdout import patch_stdout
        except ImportError:  # pragma: no cover
            print("prompt_toolkit is not installed: pip install prompt_toolkit")
            return 1

        print("bflive live REPL")
        print("Type a program to run it; a new line restarts with the new program. (:help for help)")

        self._start_poller()
        session = PromptSession(completer=WordCompleter(REPL_COMMANDS, sentence=True))
        try:
            with patch_stdout():
                while True:
                    if self.fatal is not None:
                        return 1
                    try:
                        line = session.prompt(self._prompt_text)
                    except EOFError:
                        print("\nEOF -> quitting.")
                        return 0
                    except KeyboardInterrupt:
                        print("\nKeyboardInterrupt (Ctrl-C). Use :quit to exit.")
                        continue

                    if not line.strip():
                        continue
                    try:
                        self.handle_line(line)
                    except SystemExit as e:
                        return e.code if isinstance(e.code, int) else 0
        finally:
            self._stop_poller()
            self.ai.shutdown()


# ======================================================================
# main
# ======================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bflive", description="Run tape-machine programs.")
    parser.add_argument("--test", action="store_true", help="run the bundled unit tests")
    sub = parser.add_subparsers(dest="command")

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("-i", "--input", default="", help="input queue for the ',' instruction")
        p.add_argument("-a", "--auto-input", type=parse_byte, default=None,
                       help="byte used by ',' when the input queue is empty")
        p.add_argument("-v", "--verbose", action="count", default=0, help="-v: info, -vv: debug")

    run_p = sub.add_parser("run", help="execute a program and print its output")
    run_p.add_argument("-e", "--code", default=None,
                       help="program text (read from stdin when omitted)")
    common(run_p)

    live_p = sub.add_parser("live", help="interactive REPL with live restart")
    live_p.add_argument("--tick", type=float, default=DEFAULT_TICK,
                        help="seconds between state polls")
    common(live_p)
    live_p.set_defaults(auto_input=DEFAULT_LIVE_AUTO_INPUT)

    gen_p = sub.add_parser("generate", help="read text on stdin, print a program that outputs it")
    gen_p.add_argument("mode", choices=GENERATE_MODES)
    gen_p.add_argument("-n", "--newline", action="store_true",
                       help="append a final newline to the text if it is missing")
    gen_p.add_argument("-v", "--verbose", action="count", default=0, help="-v: info, -vv: debug")
    return parser


def run_tests() -> int:
    suite = unittest.TestLoader().loadTestsFromNames(TEST_MODULES)
    result = unittest.TextTestRunner(verbosity=2).run(suite)
    return 0 if result.wasSuccessful() else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.test:
        return run_tests()
    if args.command is None:
        parser.print_help()
        return 2

    configure_logging(args.verbose)

    if args.command == "generate":
        data = sys.stdin.buffer.read()
        log.info("generating %s script for %d bytes", args.mode, len(data))
        sys.stdout.write(generate(data, args.mode, args.newline))
        sys.stdout.flush()
        return 0

    input_bytes = args.input.encode("utf-8")

    if args.command == "run":
        if args.code is not None:
            code = args.code.encode("utf-8")
        else:
            code = sys.stdin.buffer.read()
        return run_script(code, input_bytes, args.auto_input)

    repl = LiveREPL(input_bytes, args.auto_input, args.tick)
    return repl.run()


# ======================================================================
# Tests intégrés (python bflive_repl.py --test)
# ======================================================================

def _wait_done(ai: AsyncInterpreter, timeout: float = 2.0) -> State:
    deadline = time.time() + timeout
    st = ai.state()
    while not st.status.is_terminal and time.time() < deadline:
        time.sleep(0.005)
        st = ai.state()
    return st


class TestRunScript(unittest.TestCase):
    def test_output_written(self) -> None:
        out = io.BytesIO()
        self.assertEqual(run_script(b"++++++++[>++++++++<-]>+.", out=out), 0)
        self.assertEqual(out.getvalue(), b"A")

    def test_input_and_auto_input(self) -> None:
        out = io.BytesIO()
        self.assertEqual(run_script(b",.,.", b"x", auto_input=ord("y"), out=out), 0)
        self.assertEqual(out.getvalue(), b"xy")

    def test_error_reports_and_keeps_partial_output(self) -> None:
        out, err = io.BytesIO(), io.StringIO()
        self.assertEqual(run_script(b"+.]", out=out, err=err), 1)
        self.assertEqual(out.getvalue(), b"\x01")
        self.assertEqual(err.getvalue(), "error: mismatched brackets\n")

    def test_stdin_fallback(self) -> None:
        out = io.BytesIO()
        self.assertEqual(run_script(b",.", out=out, stdin=io.BytesIO(b"q")), 0)
        self.assertEqual(out.getvalue(), b"q")


class TestMain(unittest.TestCase):
    def _run_main(self, argv: List[str], stdin: bytes = b"") -> bytes:
        fake_out = io.TextIOWrapper(io.BytesIO())
        fake_in = io.TextIOWrapper(io.BytesIO(stdin))
        with mock.patch("sys.stdout", fake_out), mock.patch("sys.stdin", fake_in):
            self.rc = main(argv)
        fake_out.flush()
        return fake_out.buffer.getvalue()

    def test_run_with_inline_code(self) -> None:
        self.assertEqual(self._run_main(["run", "-e", "+++++[>++++++++++<-]>-."]), b"1")
        self.assertEqual(self.rc, 0)

    def test_run_reads_program_from_stdin(self) -> None:
        self.assertEqual(self._run_main(["run", "-a", "7"], stdin=b"+++ comment ,."), b"\x07")
        self.assertEqual(self.rc, 0)

    def test_generate_roundtrip_through_run(self) -> None:
        text = b"Hi  there\nsecond line\n"
        for mode in GENERATE_MODES:
            with self.subTest(mode=mode):
                script = self._run_main(["generate", mode], stdin=text)
                self.assertEqual(self.rc, 0)
                self.assertEqual(Interpreter(script).run(), text)

    def test_generate_newline_flag(self) -> None:
        script = self._run_main(["generate", "charwise", "-n"], stdin=b"ok")
        self.assertEqual(Interpreter(script).run(), b"ok\n")

    def test_generate_rejects_unknown_mode(self) -> None:
        with mock.patch("sys.stderr", io.StringIO()):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["generate", "wordwise"])

    def test_parse_byte(self) -> None:
        self.assertEqual(parse_byte("65"), 65)
        self.assertEqual(parse_byte("0x41"), 65)
        self.assertEqual(parse_byte("A"), 65)
        with self.assertRaises(argparse.ArgumentTypeError):
            parse_byte("256")

    def test_live_defaults_to_auto_input(self) -> None:
        args = build_parser().parse_args(["live"])
        self.assertEqual(args.auto_input, DEFAULT_LIVE_AUTO_INPUT)
        self.assertEqual(args.tick, DEFAULT_TICK)
        args = build_parser().parse_args(["run", "-e", "+"])
        self.assertIsNone(args.auto_input)

    def test_verbosity_levels(self) -> None:
        with mock.patch("logging.basicConfig") as basic:
            configure_logging(2)
        self.assertEqual(basic.call_args.kwargs["level"], logging.DEBUG)
        with mock.patch("logging.basicConfig") as basic, \
                mock.patch.dict(os.environ, {LOG_LEVEL_ENV: "info"}):
            configure_logging(0)
        self.assertEqual(basic.call_args.kwargs["level"], logging.INFO)


class TestLiveREPL(unittest.TestCase):
    def setUp(self) -> None:
        self.repl = LiveREPL(tick=0.01)

    def tearDown(self) -> None:
        self.repl.ai.shutdown()

    def feed(self, line: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.repl.handle_line(line)
        return buf.getvalue()

    def poll(self) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.repl.poll_once()
        return buf.getvalue()

    def test_program_line_runs_and_output_is_polled(self) -> None:
        self.feed("++++++++[>++++++++<-]>+.")
        self.assertEqual(_wait_done(self.repl.ai).status, Status.done())
        out = self.poll()
        self.assertIn("A", out)
        self.assertIn("[Done]", out)
        # rien de nouveau au poll suivant
        self.assertEqual(self.poll(), "")

    def test_restart_resets_printed_output(self) -> None:
        self.feed("+++++++[>+++++++<-]>.")
        _wait_done(self.repl.ai)
        self.assertIn("1", self.poll())
        self.feed("+++++++[>+++++++<-]>+.")
        _wait_done(self.repl.ai)
        self.assertIn("2", self.poll())

    def test_input_command(self) -> None:
        self.assertIn("abc", self.feed(":input abc"))
        self.feed(",.,.,.")
        _wait_done(self.repl.ai)
        self.assertIn("abc", self.poll())

    def test_input_keeps_raw_text(self) -> None:
        self.feed(":input a  b 'c")
        self.assertEqual(self.repl.input, b"a  b 'c")
        self.feed(":input")
        self.assertEqual(self.repl.input, b"")

    def test_auto_command(self) -> None:
        self.assertIn("auto-input = 0", self.feed(":auto"))
        self.assertIn("auto-input = 66", self.feed(":auto 66"))
        self.assertEqual(self.repl.auto_input, 66)
        self.assertIn("usage", self.feed(":auto 999"))
        self.assertEqual(self.repl.auto_input, 66)
        self.feed(",.")
        _wait_done(self.repl.ai)
        self.assertIn("B", self.poll())
        self.assertIn("off", self.feed(":auto off"))
        self.assertIsNone(self.repl.auto_input)

    def test_error_status_is_printed(self) -> None:
        self.feed("+.]")
        self.assertTrue(_wait_done(self.repl.ai).status.is_error)
        self.assertIn("mismatched brackets", self.poll())

    def test_state_and_tape_commands(self) -> None:
        self.feed(">>+++")
        _wait_done(self.repl.ai)
        state_out = self.feed(":state")
        self.assertIn("status=Done", state_out)
        self.assertIn("cursor=2", state_out)
        self.assertIn("[3]", self.feed(":tape"))
        self.assertIn("@1: 0 [3]", self.feed(":tape 1 5"))
        self.assertIn("usage", self.feed(":tape x"))

    def test_quit_raises_systemexit(self) -> None:
        with self.assertRaises(SystemExit):
            self.feed(":quit")

    def test_unknown_command_prints_help(self) -> None:
        out = self.feed(":nope")
        self.assertIn("unknown command", out)
        self.assertIn(":input", out)

    def test_fatal_state_blocks_interaction(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.repl.ai._state.locked():
                raise RuntimeError("panic")
        self.assertIn("FATAL", self.poll())
        self.assertIsNotNone(self.repl.fatal)
        self.assertIn("unusable", self.feed("+."))
        with self.assertRaises(SystemExit):
            self.feed(":quit")

    def test_fatal_quit_exits_silently(self) -> None:
        self.repl.ai._state.poison()
        self.poll()
        buf = io.StringIO()
        with redirect_stdout(buf):
            with self.assertRaises(SystemExit) as ctx:
                self.repl.handle_line(":quit")
        self.assertEqual(ctx.exception.code, 1)
        self.assertEqual(buf.getvalue(), "")

    def test_poller_thread_prints_output(self) -> None:
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.repl._start_poller()
            try:
                self.repl.handle_line("+++++++[>+++++++<-]>++.")
                deadline = time.time() + 2.0
                while "3" not in buf.getvalue() and time.time() < deadline:
                    time.sleep(0.01)
            finally:
                self.repl._stop_poller()
        self.assertIn("3", buf.getvalue())


if __name__ == "__main__":
    if "--test" in sys.argv:
        sys.argv = [sys.argv[0]]
        sys.exit(run_tests())
    sys.exit(main())
