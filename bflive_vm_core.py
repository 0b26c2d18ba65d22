#!/usr/bin/env python3
# bflive_vm_core.py
#
# Noyau interpréteur pour la machine à ruban à 8 instructions.
# - nettoyage du programme (tout ce qui n'est pas + - < > [ ] . , est un commentaire)
# - table de sauts [ <-> ] construite une seule fois, en une passe avec une pile
# - exécution pas à pas : step() / peek() / protocole itérateur
#
# Pas de thread ici : AsyncInterpreter (bflive_runtime) pilote un
# Interpreter depuis un worker.

from __future__ import annotations

import io
import sys
import unittest
from collections import deque
from typing import BinaryIO, Deque, Dict, Iterable, Iterator, List, Optional, Union
from unittest import mock

from bflive_tape import Tape

INSTRUCTIONS = b"+-<>[].,"

ByteSource = Union[str, bytes, bytearray, Iterable[int]]


class BfError(RuntimeError): ...
class InterpreterError(BfError): ...


class MismatchedBracketError(InterpreterError):
    def __init__(self, message: str = "mismatched brackets") -> None:
        super().__init__(message)


class InputReadError(InterpreterError): ...


def as_bytes(data: Optional[ByteSource]) -> bytes:
    """str -> UTF-8, None -> b"", sinon n'importe quel itérable d'octets."""
    if data is None:
        return b""
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


class Interpreter:
    """
    Interpréteur pas à pas.

    Les positions (ip, table de sauts) sont toujours exprimées dans le flux
    nettoyé, jamais dans le source d'origine.

    Les erreurs de crochets sont paresseuses : un crochet orphelin n'est
    signalé que quand l'exécution l'atteint. Après une erreur, l'ip n'a pas
    bougé et l'appelant doit considérer le programme comme terminé.
    """

    def __init__(
        self,
        code: ByteSource,
        input: Optional[ByteSource] = None,
        auto_input: Optional[int] = None,
        *,
        stdin: Optional[BinaryIO] = None,
    ) -> None:
        if auto_input is not None and not 0 <= auto_input <= 0xFF:
            raise ValueError(f"auto_input out of range: {auto_input!r}")
        self._instructions: bytes = self.sanitize(code)
        self._bracemap: Dict[int, int] = self.build_bracemap(self._instructions)
        self._ip: int = 0
        self.tape: Tape = Tape()
        self.input: Deque[int] = deque(as_bytes(input))
        self.auto_input: Optional[int] = auto_input
        self.output: bytearray = bytearray()
        self._stdin = stdin

    # ----------------- Construction -----------------

    @staticmethod
    def sanitize(code: ByteSource) -> bytes:
        return bytes(b for b in as_bytes(code) if b in INSTRUCTIONS)

    @staticmethod
    def build_bracemap(instructions: bytes) -> Dict[int, int]:
        open_brackets: List[int] = []
        bracemap: Dict[int, int] = {}
        for i, op in enumerate(instructions):
            if op == 0x5B:  # '['
                open_brackets.append(i)
            elif op == 0x5D and open_brackets:  # ']'
                j = open_brackets.pop()
                bracemap[j] = i
                bracemap[i] = j
        # les crochets restés seuls ne sont pas dans la table
        return bracemap

    # ----------------- Accès lecture -----------------

    @property
    def ip(self) -> int:
        return self._ip

    @property
    def instructions(self) -> bytes:
        return self._instructions

    @property
    def bracemap(self) -> Dict[int, int]:
        return dict(self._bracemap)

    def output_bytes(self) -> bytes:
        return bytes(self.output)

    def output_text(self) -> str:
        return self.output.decode("utf-8", errors="replace")

    def finished(self) -> bool:
        return self._ip >= len(self._instructions)

    def peek(self) -> Optional[str]:
        """Prochaine instruction, sans l'exécuter (None en fin de programme)."""
        if self.finished():
            return None
        return chr(self._instructions[self._ip])

    # ----------------- Exécution -----------------

    def _jump_target(self) -> int:
        try:
            return self._bracemap[self._ip] + 1
        except KeyError:
            raise MismatchedBracketError() from None

    def _read_byte(self) -> int:
        if self.input:
            return self.input.popleft()
        if self.auto_input is not None:
            return self.auto_input
        # Lecture BLOQUANTE d'un octet sur stdin : peut suspendre le thread
        # appelant indéfiniment, et le drapeau stop n'y peut rien.
        try:
            # sys.stdin peut être None (pythonw, démon) ou sans .buffer (StringIO)
            stream = self._stdin if self._stdin is not None else sys.stdin.buffer
            data = stream.read(1)
        except (AttributeError, OSError, ValueError) as e:
            raise InputReadError(f"failed to read character from stdin: {e}") from e
        if not data:
            raise InputReadError("failed to read character from stdin: unexpected end of file")
        return data[0]

    def step(self) -> Optional[str]:
        """
        Exécute exactement une instruction et la renvoie.
        Renvoie None quand l'ip a dépassé la fin du programme.
        Lève InterpreterError (crochet orphelin, échec de lecture).
        """
        if self.finished():
            return None

        op = chr(self._instructions[self._ip])
        next_ip = self._ip + 1
        cell = self.tape.current()

        if op == "+":
            cell.inc()
        elif op == "-":
            cell.dec()
        elif op == ">":
            self.tape.move_right()
        elif op == "<":
            self.tape.move_left()
        elif op == "[":
            # la table est consultée à chaque fois, même si on ne saute pas
            target = self._jump_target()
            if cell.value() == 0:
                next_ip = target
        elif op == "]":
            target = self._jump_target()
            if cell.value() != 0:
                next_ip = target
        elif op == ".":
            self.output.append(cell.value())
        elif op == ",":
            cell.set(self._read_byte())

        self._ip = next_ip
        return op

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        op = self.step()
        if op is None:
            raise StopIteration
        return op

    def run(self) -> bytes:
        """Exécute jusqu'à la fin et renvoie la sortie."""
        for _ in self:
            pass
        return self.output_bytes()


def tape_from_script(script: ByteSource) -> Tape:
    """Exécute `script` jusqu'au bout (sans entrée) et renvoie son ruban."""
    interp = Interpreter(script)
    interp.run()
    return interp.tape


# ============================================================
# Tests unitaires Interpreter
# ============================================================

class TestSanitizeAndBracemap(unittest.TestCase):
    def test_sanitize_drops_comments(self) -> None:
        interp = Interpreter(b"hello + world -> [ ok ] . , !")
        self.assertEqual(interp.instructions, b"+->[].,")

    def test_str_code_is_accepted(self) -> None:
        self.assertEqual(Interpreter("a+b.").instructions, b"+.")

    def test_bracemap_is_bidirectional(self) -> None:
        interp = Interpreter(b"[[]][]")
        self.assertEqual(interp.bracemap, {0: 3, 3: 0, 1: 2, 2: 1, 4: 5, 5: 4})

    def test_bracemap_uses_sanitized_positions(self) -> None:
        interp = Interpreter(b"x [ y ] z")
        self.assertEqual(interp.bracemap, {0: 1, 1: 0})

    def test_unmatched_brackets_are_absent(self) -> None:
        interp = Interpreter(b"][[]")
        self.assertEqual(interp.bracemap, {2: 3, 3: 2})

    def test_bad_auto_input_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Interpreter(b",", auto_input=300)


class TestInterpreterRun(unittest.TestCase):
    def test_plus_three_dot(self) -> None:
        interp = Interpreter(b"+++.")
        self.assertEqual(interp.run(), b"\x03")
        self.assertIsNone(interp.step())

    def test_clear_loop_from_five(self) -> None:
        interp = Interpreter(b"+++++[-]")
        self.assertEqual(interp.run(), b"")
        self.assertEqual(interp.tape.current().value(), 0)

    def test_skip_loop_when_zero(self) -> None:
        interp = Interpreter(b"[.]+.")
        self.assertEqual(interp.run(), b"\x01")

    def test_nested_loops(self) -> None:
        # 2 * 3 = 6 dans la cellule 1
        self.assertEqual(tape_from_script("++[>+++<-]").values(), [0, 6])

    def test_hello_world(self) -> None:
        src = (
            "++++++++[>++++[>++>+++>+++>+<<<<-]>+>+>->>+[<]<-]"
            ">>.>---.+++++++..+++.>>.<-.<.+++.------.--------.>>+.>++."
        )
        self.assertEqual(Interpreter(src).run(), b"Hello World!\n")

    def test_output_text_is_lossy(self) -> None:
        interp = Interpreter(b"-.")
        interp.run()
        self.assertEqual(interp.output_bytes(), b"\xff")
        self.assertEqual(interp.output_text(), "�")

    def test_move_left_of_origin_is_clamped(self) -> None:
        tape = tape_from_script("<<<+>+")
        self.assertEqual(tape.values(), [1, 1])

    def test_empty_program_finishes_immediately(self) -> None:
        interp = Interpreter(b"no instructions here")
        self.assertIsNone(interp.peek())
        self.assertIsNone(interp.step())
        self.assertEqual(list(interp), [])

    def test_iteration_is_lazy_and_resumable(self) -> None:
        interp = Interpreter(b"+>+.")
        it = iter(interp)
        self.assertEqual(next(it), "+")
        self.assertEqual(interp.ip, 1)
        self.assertEqual(interp.peek(), ">")
        self.assertEqual(list(interp), [">", "+", "."])
        self.assertEqual(interp.output_bytes(), b"\x01")


class TestInterpreterErrors(unittest.TestCase):
    def test_lone_open_bracket_errors(self) -> None:
        interp = Interpreter(b"[")
        with self.assertRaises(MismatchedBracketError) as ctx:
            interp.step()
        self.assertEqual(str(ctx.exception), "mismatched brackets")
        # l'ip ne bouge pas
        self.assertEqual(interp.ip, 0)

    def test_lone_open_bracket_errors_even_with_nonzero_cell(self) -> None:
        interp = Interpreter(b"+[")
        interp.step()
        with self.assertRaises(MismatchedBracketError):
            interp.step()

    def test_lone_close_bracket_errors(self) -> None:
        with self.assertRaises(MismatchedBracketError):
            Interpreter(b"]").run()

    def test_mismatch_is_lazy(self) -> None:
        interp = Interpreter(b"+.]")
        self.assertEqual(interp.step(), "+")
        self.assertEqual(interp.step(), ".")
        with self.assertRaises(InterpreterError):
            interp.step()
        self.assertEqual(interp.output_bytes(), b"\x01")


class TestInterpreterInput(unittest.TestCase):
    def test_input_queue(self) -> None:
        self.assertEqual(Interpreter(b",.", [65]).run(), b"A")

    def test_input_queue_is_fifo(self) -> None:
        self.assertEqual(Interpreter(b",.,.", b"xy").run(), b"xy")

    def test_auto_input_when_queue_empty(self) -> None:
        self.assertEqual(Interpreter(b",.", [], auto_input=66).run(), b"B")

    def test_queue_before_auto_input(self) -> None:
        self.assertEqual(Interpreter(b",.,.", b"a", auto_input=0).run(), b"a\x00")

    def test_falls_back_to_stdin(self) -> None:
        interp = Interpreter(b",.,.", stdin=io.BytesIO(b"ok"))
        self.assertEqual(interp.run(), b"ok")

    def test_stdin_eof_is_input_error(self) -> None:
        interp = Interpreter(b",", stdin=io.BytesIO(b""))
        with self.assertRaises(InputReadError) as ctx:
            interp.step()
        self.assertIn("failed to read character from stdin", str(ctx.exception))

    def test_closed_stdin_is_input_error(self) -> None:
        stream = io.BytesIO(b"x")
        stream.close()
        with self.assertRaises(InputReadError):
            Interpreter(b",", stdin=stream).step()

    def test_text_stdin_without_buffer_is_input_error(self) -> None:
        with mock.patch("sys.stdin", io.StringIO("x")):
            with self.assertRaises(InputReadError) as ctx:
                Interpreter(b",").step()
        self.assertIn("failed to read character from stdin", str(ctx.exception))

    def test_missing_stdin_is_input_error(self) -> None:
        interp = Interpreter(b"+,")
        interp.step()
        with mock.patch("sys.stdin", None):
            with self.assertRaises(InputReadError):
                interp.step()
        self.assertEqual(interp.ip, 1)


if __name__ == "__main__":
    unittest.main(argv=sys.argv[:1])
