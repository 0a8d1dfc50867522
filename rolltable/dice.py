"""Dice notation and rolling

Supported notation (case-insensitive):
- XdY, dY            sum of X Y-sided dice (X defaults to 1)
- XdY!               exploding: a die showing its maximum adds one more die
- XdYkN, khN, klN    keep the highest (k/kh) or lowest (kl) N dice
- trailing +Z, -Z, *Z modifier applied to the kept sum

Exploding re-rolls are capped per directive, not per die.
"""

import random
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .errors import ParseError


DICE_PATTERN = re.compile(
    r"^\s*(?P<count>\d*)\s*d\s*(?P<sides>\d+)"
    r"(?P<explode>!)?"
    r"(?:k(?P<keep_mode>[hl])?(?P<keep>\d+))?"
    r"(?:\s*(?P<op>[+\-*])\s*(?P<mod>\d+))?\s*$",
    re.IGNORECASE,
)


class DiceNotationError(ParseError):
    """Dice notation could not be parsed"""


@dataclass(frozen=True)
class DiceSpec:
    count: int
    sides: int
    exploding: bool = False
    keep: Optional[Tuple[str, int]] = None       # ("h" | "l", n)
    modifier: Optional[Tuple[str, int]] = None   # ("+" | "-" | "*", z)
    notation: str = ""

    def __str__(self) -> str:
        return self.notation or f"{self.count}d{self.sides}"


@dataclass
class DiceResult:
    """Outcome of one dice directive"""
    notation: str
    total: int
    rolls: List[int] = field(default_factory=list)
    kept: List[int] = field(default_factory=list)
    explosions: int = 0
    modifier: Optional[Tuple[str, int]] = None

    @property
    def breakdown(self) -> str:
        text = "[" + ", ".join(str(r) for r in self.rolls) + "]"
        if self.kept != self.rolls:
            text += " keep [" + ", ".join(str(r) for r in self.kept) + "]"
        if self.modifier:
            text += f" {self.modifier[0]} {self.modifier[1]}"
        return f"{text} = {self.total}"

    def to_dict(self) -> dict:
        return {
            "notation": self.notation,
            "total": self.total,
            "rolls": list(self.rolls),
            "kept": list(self.kept),
            "explosions": self.explosions,
            "breakdown": self.breakdown,
        }


def parse_notation(text: str) -> DiceSpec:
    """Parse dice notation into a DiceSpec"""
    match = DICE_PATTERN.match(text or "")
    if not match:
        raise DiceNotationError("Invalid dice notation", text)

    count = int(match.group("count")) if match.group("count") else 1
    sides = int(match.group("sides"))
    if count < 1:
        raise DiceNotationError("Dice count must be at least 1", text)
    if sides < 1:
        raise DiceNotationError("Dice must have at least one side", text)

    keep = None
    if match.group("keep"):
        keep_n = int(match.group("keep"))
        if keep_n < 1:
            raise DiceNotationError("Keep count must be at least 1", text)
        keep = ((match.group("keep_mode") or "h").lower(), keep_n)

    modifier = None
    if match.group("op"):
        modifier = (match.group("op"), int(match.group("mod")))

    return DiceSpec(
        count=count,
        sides=sides,
        exploding=bool(match.group("explode")),
        keep=keep,
        modifier=modifier,
        notation=text.strip(),
    )


class DiceRoller:
    """Rolls DiceSpecs against an injected random generator"""

    def __init__(self, rng: Optional[random.Random] = None, max_exploding: int = 100):
        self.rng = rng or random.Random()
        self.max_exploding = max_exploding

    def roll(self, spec: DiceSpec) -> DiceResult:
        rolls = [self.rng.randint(1, spec.sides) for _ in range(spec.count)]

        explosions = 0
        if spec.exploding:
            pending = sum(1 for r in rolls if r == spec.sides)
            while pending and explosions < self.max_exploding:
                pending -= 1
                explosions += 1
                extra = self.rng.randint(1, spec.sides)
                rolls.append(extra)
                if extra == spec.sides:
                    pending += 1

        kept = list(rolls)
        if spec.keep:
            mode, n = spec.keep
            ordered = sorted(rolls, reverse=(mode == "h"))
            kept = ordered[:n]

        total = sum(kept)
        if spec.modifier:
            op, value = spec.modifier
            if op == "+":
                total += value
            elif op == "-":
                total -= value
            else:
                total *= value

        return DiceResult(
            notation=str(spec),
            total=total,
            rolls=rolls,
            kept=kept,
            explosions=explosions,
            modifier=spec.modifier,
        )

    def roll_notation(self, notation: str) -> DiceResult:
        return self.roll(parse_notation(notation))


def roll_dice(notation: str, rng: Optional[random.Random] = None,
              max_exploding: int = 100) -> DiceResult:
    """Convenience function to roll dice notation"""
    return DiceRoller(rng, max_exploding).roll_notation(notation)
