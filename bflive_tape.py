#!/usr/bin/env python3
# bflive_tape.py
#
# Mémoire de la machine à ruban :
# - Cell : un octet qui boucle modulo 256
# - Tape : liste de Cells qui ne fait que grandir, avec un curseur
#
# Aucune I/O ici : le ruban est manipulé par l'Interpreter
# (bflive_vm_core) et copié en entier pour les snapshots.

from __future__ import annotations

import sys
import unittest
from typing import List


# ============================================================
# Cell
# ============================================================

class Cell:
    """Un octet modulo 256 (255 + 1 -> 0, 0 - 1 -> 255)."""

    __slots__ = ("_value",)

    def __init__(self, value: int = 0) -> None:
        self._value = 0
        self.set(value)

    def inc(self) -> None:
        self._value = (self._value + 1) & 0xFF

    def dec(self) -> None:
        self._value = (self._value - 1) & 0xFF

    increment = inc
    decrement = dec

    def value(self) -> int:
        return self._value

    def set(self, value: int) -> None:
        if not 0 <= value <= 0xFF:
            raise ValueError(f"cell value out of range: {value!r}")
        self._value = value

    def char(self) -> str:
        return chr(self._value)

    def copy(self) -> "Cell":
        return Cell(self._value)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Cell) and self._value == other._value

    def __repr__(self) -> str:
        return f"Cell({self._value})"


# ============================================================
# Tape
# ============================================================

class Tape:
    """
    Ruban extensible vers la droite uniquement.

    Invariants :
      - le curseur désigne toujours une cellule existante
      - la liste ne rétrécit jamais, et ne grandit que quand le curseur
        dépasse la fin
      - aller à gauche de l'origine ne fait rien (le curseur reste à 0)
    """

    def __init__(self) -> None:
        self.cells: List[Cell] = [Cell()]
        self._cursor: int = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    def __len__(self) -> int:
        return len(self.cells)

    def _get(self, index: int) -> Cell:
        while index >= len(self.cells):
            self.cells.append(Cell())
        return self.cells[index]

    def current(self) -> Cell:
        """Cellule sous le curseur (étend le ruban si besoin)."""
        return self._get(self._cursor)

    def move_right(self) -> None:
        self._cursor += 1
        # force l'extension tout de suite
        self.current()

    def move_left(self) -> None:
        # borné à 0 : pas d'erreur, pas de bouclage
        if self._cursor > 0:
            self._cursor -= 1

    def window(self, offset: int, count: int) -> List[Cell]:
        """
        Au plus `count` cellules à partir de `offset`, coupé à la longueur
        courante du ruban. Utilisé pour l'affichage paginé.
        """
        if offset < 0 or count < 0:
            raise ValueError("window: offset and count must be >= 0")
        return self.cells[offset:offset + count]

    def values(self) -> List[int]:
        return [c.value() for c in self.cells]

    def copy(self) -> "Tape":
        """Snapshot complet : les cellules ne sont pas partagées."""
        t = Tape.__new__(Tape)
        t.cells = [c.copy() for c in self.cells]
        t._cursor = self._cursor
        return t

    __copy__ = copy

    def __deepcopy__(self, memo) -> "Tape":
        return self.copy()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tape):
            return NotImplemented
        return self._cursor == other._cursor and self.cells == other.cells

    def __repr__(self) -> str:
        return f"Tape(cursor={self._cursor}, values={self.values()})"


# ============================================================
# Tests unitaires Cell / Tape
# ============================================================

class TestCell(unittest.TestCase):
    def test_new_cell_is_zero(self) -> None:
        self.assertEqual(Cell().value(), 0)

    def test_inc_then_dec_restores_value(self) -> None:
        for v in range(256):
            c = Cell(v)
            c.inc()
            c.dec()
            self.assertEqual(c.value(), v)

    def test_256_increments_wrap_to_start(self) -> None:
        for v in (0, 1, 127, 200, 255):
            c = Cell(v)
            for _ in range(256):
                c.increment()
            self.assertEqual(c.value(), v)

    def test_wraparound_at_bounds(self) -> None:
        c = Cell(255)
        c.inc()
        self.assertEqual(c.value(), 0)
        c.dec()
        self.assertEqual(c.value(), 255)

    def test_set_updates_value(self) -> None:
        c = Cell()
        c.set(65)
        self.assertEqual(c.value(), 65)
        self.assertEqual(c.char(), "A")

    def test_set_rejects_out_of_range(self) -> None:
        c = Cell()
        with self.assertRaises(ValueError):
            c.set(256)
        with self.assertRaises(ValueError):
            c.set(-1)
        self.assertEqual(c.value(), 0)


class TestTape(unittest.TestCase):
    def setUp(self) -> None:
        self.tape = Tape()

    def test_fresh_tape(self) -> None:
        self.assertEqual(len(self.tape), 1)
        self.assertEqual(self.tape.cursor, 0)
        self.assertEqual(self.tape.current().value(), 0)

    def test_move_left_at_origin_is_noop(self) -> None:
        self.tape.move_left()
        self.tape.move_left()
        self.assertEqual(self.tape.cursor, 0)
        self.assertEqual(len(self.tape), 1)

    def test_move_right_grows_eagerly(self) -> None:
        self.tape.move_right()
        self.assertEqual(self.tape.cursor, 1)
        self.assertEqual(len(self.tape), 2)

    def test_right_then_left_keeps_values(self) -> None:
        n = 5
        for i in range(n):
            for _ in range(i + 1):
                self.tape.current().inc()
            self.tape.move_right()
        for _ in range(n):
            self.tape.move_left()
        self.assertEqual(self.tape.cursor, 0)
        self.assertEqual(self.tape.values(), [1, 2, 3, 4, 5, 0])

    def test_tape_never_shrinks(self) -> None:
        for _ in range(3):
            self.tape.move_right()
        for _ in range(3):
            self.tape.move_left()
        self.assertEqual(len(self.tape), 4)
        self.tape.move_right()
        self.assertEqual(len(self.tape), 4)

    def test_window_is_clipped(self) -> None:
        for _ in range(4):
            self.tape.move_right()
        self.tape.current().set(9)
        self.assertEqual([c.value() for c in self.tape.window(3, 10)], [0, 9])
        self.assertEqual(len(self.tape.window(0, 2)), 2)
        self.assertEqual(self.tape.window(42, 3), [])
        with self.assertRaises(ValueError):
            self.tape.window(-1, 2)

    def test_copy_is_independent(self) -> None:
        self.tape.current().set(7)
        snap = self.tape.copy()
        self.tape.current().inc()
        self.tape.move_right()
        self.assertEqual(snap.values(), [7])
        self.assertEqual(snap.cursor, 0)
        self.assertNotEqual(snap, self.tape)


if __name__ == "__main__":
    unittest.main(argv=sys.argv[:1])
