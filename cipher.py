# cipher.py
# Rotating-digit letter cipher used to lock chat message bodies
# - Each plaintext position i is shifted by the digit at secret[i % len(secret)]
# - Only ASCII letters move; case is preserved, everything else passes through
# - Non-digit secret characters fall back to ord(ch) % 10
# - Empty secret = identity transform
#
# Obfuscation only: wrong guesses must still produce readable-looking garbage.

from typing import Callable

ALPHABET_SIZE = 26


def digit_value(ch: str) -> int:
    """Shift amount contributed by one secret character."""
    if "0" <= ch <= "9":
        return ord(ch) - ord("0")
    return ord(ch) % 10


def shift_char(ch: str, shift: int) -> str:
    if "a" <= ch <= "z":
        base = ord("a")
    elif "A" <= ch <= "Z":
        base = ord("A")
    else:
        return ch
    return chr(base + (ord(ch) - base + shift) % ALPHABET_SIZE)


def _rotate(text: str, secret: str, shift_for: Callable[[int], int]) -> str:
    if not secret:
        return text
    period = len(secret)
    return "".join(
        shift_char(ch, shift_for(digit_value(secret[i % period])))
        for i, ch in enumerate(text)
    )


# ----------------------------
# Public API
# ----------------------------

def encrypt(text: str, secret: str) -> str:
    return _rotate(text, secret, lambda d: d)


def decrypt(text: str, secret: str) -> str:
    """Undo encrypt(); with the wrong secret this yields plausible garbage."""
    return _rotate(text, secret, lambda d: ALPHABET_SIZE - (d % ALPHABET_SIZE))
