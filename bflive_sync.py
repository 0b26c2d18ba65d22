#!/usr/bin/env python3
# bflive_sync.py
#
# Petites briques de synchronisation partagées entre le worker
# d'AsyncInterpreter et les threads observateurs :
# - SharedCell : une valeur gardée par un verrou, "empoisonnable"
#
# Empoisonnement : si une exception sort d'un bloc `with cell.locked()`,
# la cellule est marquée comme empoisonnée pour toujours ; tout load/store
# suivant lève PoisonedError. Il n'y a pas de chemin de récupération.

from __future__ import annotations

import sys
import threading
import unittest
from contextlib import contextmanager
from typing import Callable, Generic, Iterator, TypeVar

T = TypeVar("T")

ERROR_POISONED = "an interpreter thread mutex was poisoned"


class PoisonedError(RuntimeError):
    def __init__(self, message: str = ERROR_POISONED) -> None:
        super().__init__(message)


class SharedCell(Generic[T]):
    """
    Valeur partagée protégée par un threading.Lock.

    Les valeurs stockées sont traitées comme des snapshots : load() renvoie
    l'objet tel quel, c'est à l'écrivain de stocker une copie fraîche.
    """

    def __init__(self, value: T) -> None:
        self._lock = threading.Lock()
        self._value: T = value
        self._poisoned: bool = False

    @property
    def poisoned(self) -> bool:
        return self._poisoned

    @contextmanager
    def locked(self) -> Iterator["SharedCell[T]"]:
        """
        Tient le verrou pendant le bloc. Une exception qui s'en échappe
        empoisonne la cellule (puis est propagée).
        """
        with self._lock:
            if self._poisoned:
                raise PoisonedError()
            try:
                yield self
            except BaseException:
                self._poisoned = True
                raise

    def poison(self) -> None:
        """Marque la cellule empoisonnée sans passer par une exception."""
        with self._lock:
            self._poisoned = True

    def load(self) -> T:
        with self.locked():
            return self._value

    def store(self, value: T) -> None:
        with self.locked():
            self._value = value

    def update(self, fn: Callable[[T], T]) -> T:
        """Remplace la valeur par fn(valeur) sous le verrou et la renvoie."""
        with self.locked():
            self._value = fn(self._value)
            return self._value


# ============================================================
# Tests unitaires SharedCell
# ============================================================

class TestSharedCell(unittest.TestCase):
    def test_load_store(self) -> None:
        cell = SharedCell(1)
        self.assertEqual(cell.load(), 1)
        cell.store(2)
        self.assertEqual(cell.load(), 2)
        self.assertFalse(cell.poisoned)

    def test_update(self) -> None:
        cell = SharedCell([1])
        self.assertEqual(cell.update(lambda v: v + [2]), [1, 2])
        self.assertEqual(cell.load(), [1, 2])

    def test_exception_while_locked_poisons(self) -> None:
        cell = SharedCell("x")
        with self.assertRaises(ZeroDivisionError):
            cell.update(lambda v: 1 // 0)
        self.assertTrue(cell.poisoned)
        with self.assertRaises(PoisonedError) as ctx:
            cell.load()
        self.assertEqual(str(ctx.exception), ERROR_POISONED)
        with self.assertRaises(PoisonedError):
            cell.store("y")

    def test_explicit_poison(self) -> None:
        cell = SharedCell(3)
        cell.poison()
        self.assertTrue(cell.poisoned)
        with self.assertRaises(PoisonedError):
            cell.load()
        # idempotent
        cell.poison()
        self.assertTrue(cell.poisoned)

    def test_poisoned_cell_releases_its_lock(self) -> None:
        cell = SharedCell(0)
        with self.assertRaises(KeyError):
            with cell.locked():
                raise KeyError("boom")
        # le verrou n'est plus tenu : un autre thread n'est pas bloqué
        errors = []

        def reader() -> None:
            try:
                cell.load()
            except PoisonedError as e:
                errors.append(e)

        t = threading.Thread(target=reader)
        t.start()
        t.join(timeout=1.0)
        self.assertFalse(t.is_alive())
        self.assertEqual(len(errors), 1)

    def test_concurrent_updates_are_serialized(self) -> None:
        cell = SharedCell(0)

        def bump() -> None:
            for _ in range(1000):
                cell.update(lambda v: v + 1)

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(cell.load(), 4000)


if __name__ == "__main__":
    unittest.main(argv=sys.argv[:1])
