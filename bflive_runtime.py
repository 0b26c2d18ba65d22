#!/usr/bin/env python3
# bflive_runtime.py
#
# Couche d'exécution asynchrone au-dessus de bflive_vm_core.Interpreter :
# - AsyncInterpreter : un worker (thread dédié) pilote un Interpreter
#   et publie un snapshot State après chaque pas
# - restart() remplace le programme en cours, à tout moment, sans
#   mélange entre l'ancien et le nouveau run
# - state() : lecture non bloquante, faite au rythme de l'observateur
#
# Primitives partagées :
#   _stop             threading.Event   (coopératif, vérifié entre deux pas)
#   _restart_barrier  threading.Barrier(2) : rendez-vous worker <-> restart()
#   _program          SharedCell[Optional[Program]]
#   _state            SharedCell[State]

from __future__ import annotations

import io
import logging
import os
import sys
import threading
import time
import unittest
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Optional, Tuple
from unittest import mock

from bflive_sync import ERROR_POISONED, PoisonedError, SharedCell
from bflive_tape import Tape
from bflive_vm_core import ByteSource, Interpreter, InterpreterError, as_bytes

log = logging.getLogger(__name__)

ERROR_SHUT_DOWN = "restart() on a shut down AsyncInterpreter"


# ============================================================
# Status / State
# ============================================================

class StatusKind(Enum):
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    DONE = "done"
    ERROR = "error"
    FATAL_ERROR = "fatal_error"


_STATUS_LABELS = {
    StatusKind.RUNNING: "Running…",
    StatusKind.WAITING_FOR_INPUT: "Waiting for Input…",
    StatusKind.DONE: "Done",
    StatusKind.ERROR: "ERROR",
    StatusKind.FATAL_ERROR: "ERROR",
}


@dataclass(frozen=True)
class Status:
    kind: StatusKind = StatusKind.DONE
    message: str = ""

    @classmethod
    def running(cls) -> "Status":
        return cls(StatusKind.RUNNING)

    @classmethod
    def waiting_for_input(cls) -> "Status":
        return cls(StatusKind.WAITING_FOR_INPUT)

    @classmethod
    def done(cls) -> "Status":
        return cls(StatusKind.DONE)

    @classmethod
    def error(cls, message: str) -> "Status":
        return cls(StatusKind.ERROR, message)

    @classmethod
    def fatal_error(cls, message: str) -> "Status":
        return cls(StatusKind.FATAL_ERROR, message)

    @property
    def is_error(self) -> bool:
        return self.kind in (StatusKind.ERROR, StatusKind.FATAL_ERROR)

    @property
    def is_fatal(self) -> bool:
        return self.kind is StatusKind.FATAL_ERROR

    @property
    def is_terminal(self) -> bool:
        return self.kind in (StatusKind.DONE, StatusKind.ERROR, StatusKind.FATAL_ERROR)

    def __str__(self) -> str:
        return _STATUS_LABELS[self.kind]


@dataclass(frozen=True)
class State:
    """Dernier snapshot publié par le worker."""
    status: Status = field(default_factory=Status)
    tape: Tape = field(default_factory=Tape)
    output: bytes = b""

    def output_text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class Program:
    code: bytes
    input: Tuple[int, ...] = ()
    auto_input: Optional[int] = None

    @classmethod
    def make(cls, code: ByteSource, input: Optional[ByteSource] = None,
             auto_input: Optional[int] = None) -> "Program":
        if auto_input is not None and not 0 <= auto_input <= 0xFF:
            raise ValueError(f"auto_input out of range: {auto_input!r}")
        return cls(as_bytes(code), tuple(as_bytes(input)), auto_input)


# ============================================================
# AsyncInterpreter
# ============================================================

class AsyncInterpreter:
    """
    Interpréteur piloté par un thread worker, observé par un ou plusieurs
    threads (typiquement la boucle UI) via state().

    Le worker vit aussi longtemps que l'instance (ou jusqu'à shutdown()).
    Il ne possède qu'un Interpreter à la fois ; AsyncInterpreter lui-même
    ne possède que les primitives de synchro et les buffers publiés.

    Limite connue : un `,` sans entrée en file ni auto-input bloque le
    worker sur stdin, et un restart() émis pendant ce temps attend la fin
    de la lecture.
    """

    def __init__(
        self,
        code: Optional[ByteSource] = None,
        input: Optional[ByteSource] = None,
        auto_input: Optional[int] = None,
        *,
        stdin: Optional[BinaryIO] = None,
        name: str = "bflive-worker",
    ) -> None:
        program = Program.make(code, input, auto_input) if code is not None else None

        self._stop = threading.Event()
        # l'action s'exécute une fois, les deux parties tenues au rendez-vous :
        # après restart() plus aucun snapshot de l'ancien run n'est visible
        self._restart_barrier = threading.Barrier(2, action=self._on_rendezvous)
        self._restart_lock = threading.Lock()
        self._program: SharedCell[Optional[Program]] = SharedCell(program)
        self._state: SharedCell[State] = SharedCell(State())
        self._stdin = stdin
        self._closed = False

        self.thread = threading.Thread(target=self._worker, name=name, daemon=True)
        self.thread.start()

    # ----------------- API observateur -----------------

    def state(self) -> State:
        """Dernier état publié (non bloquant). FATAL_ERROR si empoisonné."""
        try:
            return self._state.load()
        except PoisonedError:
            return State(status=Status.fatal_error(ERROR_POISONED))

    def restart(
        self,
        code: ByteSource,
        input: Optional[ByteSource] = None,
        auto_input: Optional[int] = None,
    ) -> None:
        """
        Arrête le run courant et démarre `code`.

        Bloque jusqu'à ce que le worker ait réellement quitté l'ancien run
        (rendez-vous sur la barrière). Lève PoisonedError si la cellule
        programme est empoisonnée ; le drapeau stop reste alors levé.
        """
        program = Program.make(code, input, auto_input)
        with self._restart_lock:
            if self._closed:
                raise RuntimeError(ERROR_SHUT_DOWN)
            log.debug("restart requested (%d bytes of code)", len(program.code))
            self._stop.set()
            self._program.store(program)
            try:
                self._restart_barrier.wait()
            except threading.BrokenBarrierError:
                # shutdown() a cassé la barrière pendant l'attente
                raise RuntimeError(ERROR_SHUT_DOWN) from None
            if not self._closed:
                self._stop.clear()

    def shutdown(self, timeout: Optional[float] = 1.0) -> None:
        """
        Arrête le worker : drapeau stop + barrière cassée.
        Un worker bloqué sur stdin ne sortira qu'après sa lecture.
        """
        self._closed = True
        self._stop.set()
        self._restart_barrier.abort()
        if self.thread is not threading.current_thread():
            self.thread.join(timeout)

    def is_alive(self) -> bool:
        return self.thread.is_alive()

    def __enter__(self) -> "AsyncInterpreter":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # ----------------- Worker -----------------

    def _on_rendezvous(self) -> None:
        # Le stop est remis à zéro ici, et pas par le worker après la barrière :
        # sinon il pourrait effacer le stop d'un restart() suivant.
        self._stop.clear()
        try:
            self._state.store(State(status=Status.running()))
        except PoisonedError:
            log.error("state cell poisoned, cannot reset state at restart")

    def _publish(self, status: Status, interp: Interpreter) -> bool:
        try:
            self._state.store(State(status, interp.tape.copy(), interp.output_bytes()))
        except PoisonedError:
            log.error("state cell poisoned, abandoning run at ip=%d", interp.ip)
            return False
        return True

    def _rendezvous(self) -> bool:
        """Attend restart() ; False si la barrière a été cassée (shutdown)."""
        try:
            self._restart_barrier.wait()
        except threading.BrokenBarrierError:
            return False
        return not self._closed

    def _run(self, interp: Interpreter) -> None:
        while not self._stop.is_set() and not self._closed:
            if interp.peek() == "," and not interp.input:
                if not self._publish(Status.waiting_for_input(), interp):
                    return
            try:
                op = interp.step()
            except InterpreterError as e:
                log.debug("run failed: %s", e)
                self._publish(Status.error(str(e)), interp)
                return
            if op is None:
                log.debug("run done (%d output bytes)", len(interp.output))
                self._publish(Status.done(), interp)
                return
            if not self._publish(Status.running(), interp):
                return
        log.debug("run stopped at ip=%d", interp.ip)

    def _worker(self) -> None:
        log.debug("worker %s started", threading.current_thread().name)
        while not self._closed:
            try:
                program = self._program.load()
            except PoisonedError:
                log.error("program cell poisoned, worker idle")
                program = None

            if program is None:
                time.sleep(0)
                if not self._rendezvous():
                    break
                continue

            try:
                interp = Interpreter(program.code, program.input, program.auto_input,
                                     stdin=self._stdin)
                log.debug("run start (%d instructions)", len(interp.instructions))
                self._run(interp)
            except BaseException:
                # état publié non fiable : FATAL_ERROR pour les observateurs,
                # et le worker va quand même au rendez-vous
                log.exception("worker crashed, state cell poisoned")
                self._state.poison()

            time.sleep(0)
            if not self._rendezvous():
                break
        log.debug("worker %s exiting", threading.current_thread().name)


# ============================================================
# Tests unitaires AsyncInterpreter
# ============================================================

def wait_for(ai: AsyncInterpreter, predicate, timeout: float = 2.0) -> State:
    """Poll state() jusqu'à predicate(state) ou timeout ; renvoie le dernier état."""
    deadline = time.time() + timeout
    st = ai.state()
    while not predicate(st) and time.time() < deadline:
        time.sleep(0.005)
        st = ai.state()
    return st


class TestStatus(unittest.TestCase):
    def test_labels(self) -> None:
        self.assertEqual(str(Status.running()), "Running…")
        self.assertEqual(str(Status.waiting_for_input()), "Waiting for Input…")
        self.assertEqual(str(Status.done()), "Done")
        self.assertEqual(str(Status.error("x")), "ERROR")
        self.assertEqual(str(Status.fatal_error("x")), "ERROR")

    def test_default_state(self) -> None:
        st = State()
        self.assertEqual(st.status, Status.done())
        self.assertEqual(len(st.tape), 1)
        self.assertEqual(st.output, b"")

    def test_flags(self) -> None:
        self.assertTrue(Status.fatal_error("x").is_fatal)
        self.assertTrue(Status.error("x").is_error)
        self.assertFalse(Status.running().is_terminal)
        self.assertTrue(Status.done().is_terminal)


class TestAsyncInterpreter_Runs(unittest.TestCase):
    def setUp(self) -> None:
        self.ai: Optional[AsyncInterpreter] = None

    def tearDown(self) -> None:
        if self.ai is not None:
            self.ai.shutdown()

    def test_simple_program_reaches_done(self) -> None:
        self.ai = AsyncInterpreter(b"+++.")
        st = wait_for(self.ai, lambda s: s.status.is_terminal and s.output)
        self.assertEqual(st.status, Status.done())
        self.assertEqual(st.output, b"\x03")
        self.assertEqual(st.tape.values(), [3])

    def test_mismatched_bracket_is_error(self) -> None:
        self.ai = AsyncInterpreter(b"[")
        st = wait_for(self.ai, lambda s: s.status.is_error)
        self.assertEqual(st.status, Status.error("mismatched brackets"))

    def test_input_and_auto_input(self) -> None:
        self.ai = AsyncInterpreter(b",.", [65])
        st = wait_for(self.ai, lambda s: s.output == b"A")
        self.assertEqual(st.status, Status.done())

        self.ai.restart(b",.", [], auto_input=66)
        st = wait_for(self.ai, lambda s: s.output == b"B")
        self.assertEqual(st.status, Status.done())

    def test_idle_until_first_restart(self) -> None:
        self.ai = AsyncInterpreter()
        time.sleep(0.02)
        self.assertEqual(self.ai.state(), State())
        self.ai.restart("++.")
        st = wait_for(self.ai, lambda s: s.status == Status.done())
        self.assertEqual(st.output, b"\x02")

    def test_waiting_for_input_then_stdin(self) -> None:
        r, w = os.pipe()
        rf = os.fdopen(r, "rb", buffering=0)
        wf = os.fdopen(w, "wb", buffering=0)
        try:
            self.ai = AsyncInterpreter(b"+,.", stdin=rf)
            st = wait_for(self.ai, lambda s: s.status.kind is StatusKind.WAITING_FOR_INPUT)
            self.assertEqual(st.status.kind, StatusKind.WAITING_FOR_INPUT)
            self.assertEqual(st.tape.values(), [1])

            wf.write(b"Z")
            st = wait_for(self.ai, lambda s: s.status == Status.done())
            self.assertEqual(st.output, b"Z")
        finally:
            wf.close()
            if self.ai is not None:
                self.ai.shutdown()
                self.ai = None
            rf.close()

    def test_stdin_eof_is_error(self) -> None:
        self.ai = AsyncInterpreter(b",", stdin=io.BytesIO(b""))
        st = wait_for(self.ai, lambda s: s.status.is_error)
        self.assertEqual(st.status.kind, StatusKind.ERROR)
        self.assertIn("failed to read character from stdin", st.status.message)

    def test_text_stdin_is_error_and_restart_still_works(self) -> None:
        with mock.patch("sys.stdin", io.StringIO("x")):
            self.ai = AsyncInterpreter(b",.")
            st = wait_for(self.ai, lambda s: s.status.is_error)
        self.assertEqual(st.status.kind, StatusKind.ERROR)
        self.assertIn("failed to read character from stdin", st.status.message)
        self.assertTrue(self.ai.is_alive())

        self.ai.restart(b"++.")
        st = wait_for(self.ai, lambda s: s.status == Status.done())
        self.assertEqual(st.output, b"\x02")


class _ExplodingStream:
    def read(self, n: int) -> bytes:
        raise RuntimeError("stream exploded")


class TestAsyncInterpreter_WorkerCrash(unittest.TestCase):
    def setUp(self) -> None:
        self.ai = AsyncInterpreter(b"+,.", stdin=_ExplodingStream())

    def tearDown(self) -> None:
        self.ai.shutdown()

    def test_unexpected_exception_becomes_fatal(self) -> None:
        st = wait_for(self.ai, lambda s: s.status.is_fatal)
        self.assertTrue(st.status.is_fatal)
        self.assertEqual(st.status.message, ERROR_POISONED)
        # le worker a survécu et attend au rendez-vous
        self.assertTrue(self.ai.is_alive())

    def test_restart_after_crash_does_not_block(self) -> None:
        wait_for(self.ai, lambda s: s.status.is_fatal)
        t = threading.Thread(target=self.ai.restart, args=(b"++.",), daemon=True)
        t.start()
        t.join(timeout=2.0)
        self.assertFalse(t.is_alive())
        self.assertTrue(self.ai.state().status.is_fatal)


class TestAsyncInterpreter_Restart(unittest.TestCase):
    def setUp(self) -> None:
        self.ai = AsyncInterpreter(b"+[]")

    def tearDown(self) -> None:
        self.ai.shutdown()

    def test_restart_infinite_loop(self) -> None:
        st = wait_for(self.ai, lambda s: s.status == Status.running() and s.tape.values() == [1])
        self.assertEqual(st.status, Status.running())

        self.ai.restart(b"++.", [])

        seen = []
        deadline = time.time() + 2.0
        while time.time() < deadline:
            st = self.ai.state()
            seen.append(st)
            if st.status == Status.done():
                break
            time.sleep(0.001)

        self.assertEqual(seen[-1].status, Status.done())
        self.assertEqual(seen[-1].output, b"\x02")
        # jamais de ruban de l'ancien programme après restart()
        for s in seen:
            self.assertEqual(len(s.tape), 1)
            self.assertIn(s.tape.values()[0], (0, 1, 2))
            self.assertIn(s.output, (b"", b"\x02"))

    def test_rendezvous_reset_is_a_fresh_running_state(self) -> None:
        with AsyncInterpreter() as ai:
            # worker inactif, garé au rendez-vous : l'action peut être jouée seule
            ai._on_rendezvous()
            st = ai.state()
            self.assertEqual(st, State(Status.running(), Tape(), b""))
            self.assertFalse(st.status.is_terminal)

    def test_restart_after_done_hides_old_output(self) -> None:
        self.ai.restart(b"+++.")
        wait_for(self.ai, lambda s: s.status == Status.done())
        self.ai.restart(b"+[]")
        st = self.ai.state()
        self.assertEqual(st.output, b"")
        self.assertNotEqual(st.status, Status.done())

    def test_many_restarts(self) -> None:
        for n in range(1, 6):
            self.ai.restart("+" * n + ".")
            st = wait_for(self.ai, lambda s: s.status == Status.done())
            self.assertEqual(st.output, bytes([n]))

    def test_restart_from_two_threads(self) -> None:
        errors = []

        def go(code: bytes) -> None:
            try:
                for _ in range(5):
                    self.ai.restart(code)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=go, args=(c,)) for c in (b"+[]", b"++[]")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5.0)
        self.assertEqual(errors, [])
        self.assertFalse(any(t.is_alive() for t in threads))

        self.ai.restart(b"+++.")
        st = wait_for(self.ai, lambda s: s.status == Status.done())
        self.assertEqual(st.output, b"\x03")


class TestAsyncInterpreter_Poison(unittest.TestCase):
    def setUp(self) -> None:
        self.ai = AsyncInterpreter(b"+[]")

    def tearDown(self) -> None:
        self.ai.shutdown()

    def test_poisoned_state_is_fatal(self) -> None:
        with self.assertRaises(ValueError):
            with self.ai._state.locked():
                raise ValueError("panic while publishing")
        st = self.ai.state()
        self.assertTrue(st.status.is_fatal)
        self.assertEqual(st.status.message, ERROR_POISONED)
        self.assertEqual(st.output, b"")

    def test_poisoned_program_fails_restart(self) -> None:
        with self.assertRaises(ValueError):
            with self.ai._program.locked():
                raise ValueError("panic while storing")
        with self.assertRaises(PoisonedError):
            self.ai.restart(b"+.")


class TestAsyncInterpreter_Shutdown(unittest.TestCase):
    def test_shutdown_stops_worker(self) -> None:
        ai = AsyncInterpreter(b"+[]")
        wait_for(ai, lambda s: s.status == Status.running())
        ai.shutdown()
        self.assertFalse(ai.is_alive())
        with self.assertRaises(RuntimeError):
            ai.restart(b"+")

    def test_shutdown_while_restart_waits(self) -> None:
        r, w = os.pipe()
        rf = os.fdopen(r, "rb", buffering=0)
        wf = os.fdopen(w, "wb", buffering=0)
        ai = AsyncInterpreter(b",", stdin=rf)
        errors = []

        def go() -> None:
            try:
                ai.restart(b"+")
            except RuntimeError as e:
                errors.append(e)

        try:
            wait_for(ai, lambda s: s.status.kind is StatusKind.WAITING_FOR_INPUT)
            # le worker est bloqué sur la lecture : restart() attend à la barrière
            t = threading.Thread(target=go, daemon=True)
            t.start()
            time.sleep(0.05)
            ai.shutdown(timeout=0.1)
            t.join(timeout=2.0)
            self.assertFalse(t.is_alive())
            self.assertEqual([str(e) for e in errors], [ERROR_SHUT_DOWN])
        finally:
            wf.close()
            ai.thread.join(timeout=2.0)
            rf.close()
        self.assertFalse(ai.is_alive())

    def test_context_manager(self) -> None:
        with AsyncInterpreter(b"+.") as ai:
            st = wait_for(ai, lambda s: s.status == Status.done() and s.output)
            self.assertEqual(st.output, b"\x01")
        self.assertFalse(ai.is_alive())


if __name__ == "__main__":
    unittest.main(argv=sys.argv[:1])
