#!/usr/bin/env python3
# bflive_generate.py
#
# Génération de programmes : à partir d'un texte, produit un script qui
# l'affiche tel quel.
#
# Modes :
#   charwise      -> une boucle pour tout le texte, une cellule par octet
#   linewise      -> une boucle par ligne, fin de ligne \n (ou \r\n si le
#                    texte en contient au moins une)
#   unique-chars  -> une cellule par octet distinct, puis déplacements + '.'
#
# Chaque boucle approxime les valeurs au multiple de 10 le plus proche
# (compteur à 10, un '+' par dizaine) puis corrige avec des '+' / '-'.

from __future__ import annotations

import sys
import unittest
from typing import Callable, Dict, List, Sequence

from bflive_vm_core import ByteSource, Interpreter, as_bytes

EOL = "\n"

# impression de la fin de ligne en mode linewise (cellule vide, puis '>')
BF_EOL_LF = "++++++++++.>"
BF_EOL_CRLF = "+++++++++++++.---.>"


def _approx(value: int) -> int:
    # arrondi à la dizaine, .5 vers le haut (255 -> 260, la cellule reboucle)
    return 10 * ((value + 5) // 10)


def gen_loop(script: List[str], values: Sequence[int], print_cells: bool) -> None:
    """
    Ajoute à `script` le code qui charge `values` dans les cellules qui
    suivent la cellule courante (utilisée comme compteur de boucle).

    Le curseur revient sur le compteur ; avec print_cells, les cellules
    sont ensuite affichées et le curseur finit sur la première cellule
    vide après elles.
    """
    approx = [_approx(v) for v in values]
    n = len(values)

    script.append("++++++++++[")
    for a in approx:
        script.append(">" + "+" * (a // 10))
    script.append("<" * n)
    script.append("-]")

    for v, a in zip(values, approx):
        diff = v - a
        script.append(">" + ("-" if diff < 0 else "+") * abs(diff))
    script.append("<" * n)

    if print_cells:
        script.append(">." * n)
        script.append(">")


def _lines(data: bytes) -> List[bytes]:
    """Découpe sur \\n, retire un \\r final, pas de ligne vide finale."""
    lines = data.split(b"\n")
    if lines and lines[-1] == b"":
        lines.pop()
    return [line[:-1] if line.endswith(b"\r") else line for line in lines]


def generate_charwise(data: bytes) -> str:
    script: List[str] = []
    gen_loop(script, data, True)
    script.append(EOL)
    return "".join(script)


def generate_linewise(data: bytes) -> str:
    has_final_eol = data.endswith(EOL.encode())
    bf_eol = BF_EOL_CRLF if b"\r\n" in data else BF_EOL_LF

    script: List[str] = []
    lines = _lines(data)
    for i, line in enumerate(lines):
        gen_loop(script, line, True)
        if i < len(lines) - 1 or has_final_eol:
            script.append(bf_eol)
    script.append(EOL)
    return "".join(script)


def generate_unique_chars(data: bytes) -> str:
    unique = sorted(set(data))
    # octet -> index de sa cellule (la cellule 0 est le compteur)
    index: Dict[int, int] = {b: i + 1 for i, b in enumerate(unique)}

    script: List[str] = []
    gen_loop(script, unique, False)
    script.append(">")
    cursor = 1

    for b in data:
        diff = index[b] - cursor
        script.append(("<" if diff < 0 else ">") * abs(diff))
        script.append(".")
        cursor = index[b]

    script.append(EOL)
    return "".join(script)


GENERATORS: Dict[str, Callable[[bytes], str]] = {
    "charwise": generate_charwise,
    "linewise": generate_linewise,
    "unique-chars": generate_unique_chars,
}

GENERATE_MODES = list(GENERATORS)


def generate(data: ByteSource, mode: str = "charwise", newline: bool = False) -> str:
    """Programme qui affiche `data`. newline : ajoute un \\n final s'il manque."""
    try:
        gen = GENERATORS[mode]
    except KeyError:
        raise ValueError(f"invalid mode: {mode!r} (expected one of {', '.join(GENERATE_MODES)})") from None
    raw = as_bytes(data)
    if newline and not raw.endswith(EOL.encode()):
        raw += EOL.encode()
    return gen(raw)


# ============================================================
# Tests unitaires génération
# ============================================================

SAMPLES = [
    b"",
    b"A",
    b"Hello, World!\n",
    b"multi\nline\ntext",
    b"two  spaces\n\nand a blank line\n",
    "héllo ünïcode\n".encode("utf-8"),
]


class TestGenerate(unittest.TestCase):
    def assertPrints(self, script: str, expected: bytes) -> None:
        self.assertEqual(Interpreter(script).run(), expected)

    def test_each_mode_reproduces_its_input(self) -> None:
        for mode in GENERATE_MODES:
            for data in SAMPLES:
                with self.subTest(mode=mode, data=data):
                    self.assertPrints(generate(data, mode), data)

    def test_crlf_text_linewise(self) -> None:
        data = b"first\r\nsecond\r\n"
        self.assertPrints(generate(data, "linewise"), data)
        self.assertIn(BF_EOL_CRLF, generate(data, "linewise"))

    def test_extreme_bytes_wrap_correctly(self) -> None:
        data = bytes([0, 4, 5, 250, 254, 255])
        self.assertPrints(generate(data, "charwise"), data)
        self.assertPrints(generate(data, "unique-chars"), data)

    def test_charwise_exact_script(self) -> None:
        # 65 -> 70 (7 dizaines) puis 5 '-'
        self.assertEqual(generate(b"A"), "++++++++++[>+++++++<-]>-----<>.>\n")

    def test_unique_chars_uses_one_cell_per_byte(self) -> None:
        script = generate(b"abab", "unique-chars")
        self.assertEqual(script.count("[>"), 1)
        self.assertEqual(script.count("."), 4)
        # deux cellules chargées seulement
        interp = Interpreter(script)
        interp.run()
        self.assertEqual(interp.tape.values(), [0, ord("a"), ord("b")])

    def test_newline_option(self) -> None:
        self.assertPrints(generate(b"hi", "charwise", newline=True), b"hi\n")
        self.assertPrints(generate(b"hi\n", "linewise", newline=True), b"hi\n")
        self.assertPrints(generate("", "unique-chars", newline=True), b"\n")

    def test_invalid_mode(self) -> None:
        with self.assertRaises(ValueError):
            generate(b"x", "wordwise")


if __name__ == "__main__":
    unittest.main(argv=sys.argv[:1])
