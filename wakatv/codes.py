import random
import secrets
from typing import Optional

# no 0/O, 1/I: codes get typed in by hand
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6


class CodeGenerator:
    """Short random codes (referral codes, seeded access codes).

    Pass a seeded ``random.Random`` to get a deterministic sequence.
    """

    def __init__(self, rng: Optional[random.Random] = None,
                 length: int = CODE_LENGTH, alphabet: str = ALPHABET):
        self.rng = rng if rng is not None else secrets.SystemRandom()
        self.length = length
        self.alphabet = alphabet

    def next(self) -> str:
        return "".join(
            self.rng.choice(self.alphabet) for _ in range(self.length)
        )
