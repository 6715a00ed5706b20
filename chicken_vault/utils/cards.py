"""
Utils: cards.py
Rôle:
- Parser les codes de carte (rang + couleur) saisis par le croupier ou les joueurs.
- Valider la forme d'un pari selon son niveau (SAFE / MEDIUM / BOLD).
- Calculer les points d'un pari à partir de la carte secrète et de la valeur du coffre.

Conventions:
- Rangs: A, 2..9, T (le "10" saisi est normalisé en "T"), J, Q, K.
- Couleurs (suits): S, H, D, C. Rouge = H/D, noir = S/C.
- Toutes les comparaisons se font en majuscules, espaces retirés.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

SUBMISSION_LEVELS = ("SAFE", "MEDIUM", "BOLD")
SUITS = ("S", "H", "D", "C")
RANKS = ("A", "2", "3", "4", "5", "6", "7", "8", "9", "T", "J", "Q", "K")
COLORS = ("RED", "BLACK")

# Valeurs proposées dans les listes déroulantes du classeur
WORKBOOK_RANKS = ("A", "2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K")

_CARD_RE = re.compile(r"^(A|[2-9]|10|T|J|Q|K)([SHDC])$")
_RANK_RE = re.compile(r"^(A|[2-9]|10|T|J|Q|K)$")
_SUIT_RE = re.compile(r"^[SHDC]$")
_SAFE_RE = re.compile(r"^(RED|BLACK)$")

_RANK_VALUES = {rank: index + 1 for index, rank in enumerate(RANKS)}


@dataclass(frozen=True)
class ParsedCard:
    rank: str
    suit: str

    @property
    def code(self) -> str:
        return f"{self.rank}{self.suit}"


def normalize_token(raw: Any) -> str:
    """Convertit une valeur de cellule (str, int, float, None) en jeton majuscule."""
    if raw is None:
        return ""
    if isinstance(raw, bool):
        return "YES" if raw else ""
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    return str(raw).strip().upper()


def normalize_rank(raw: Any) -> Optional[str]:
    value = normalize_token(raw)
    if not _RANK_RE.match(value):
        return None
    return "T" if value == "10" else value


def parse_card_code(raw: Any) -> Optional[ParsedCard]:
    """Parse "QD", "10h", "td"... -> ParsedCard, ou None si le code est invalide."""
    value = normalize_token(raw)
    match = _CARD_RE.match(value)
    if not match:
        return None
    rank = normalize_rank(match.group(1))
    if rank is None:
        return None
    return ParsedCard(rank=rank, suit=match.group(2))


def color_of_suit(suit: str) -> str:
    return "RED" if suit in ("H", "D") else "BLACK"


def rank_value(rank: str) -> int:
    return _RANK_VALUES[rank]


def compose_bold_guess(rank: Any, suit: Any) -> Optional[str]:
    """Assemble un pari BOLD à partir des colonnes Number + Suits du classeur."""
    normalized_rank = normalize_rank(rank)
    normalized_suit = normalize_token(suit)
    if normalized_rank is None or not _SUIT_RE.match(normalized_suit):
        return None
    return f"{normalized_rank}{normalized_suit}"


def is_submission_level(raw: Any) -> bool:
    return normalize_token(raw) in SUBMISSION_LEVELS


def normalize_guess(guess: Any) -> str:
    value = normalize_token(guess)
    parsed = parse_card_code(value)
    return parsed.code if parsed else value


def validate_guess(level: str, guess: Any) -> bool:
    """Vérifie que la forme du pari correspond au niveau annoncé."""
    value = normalize_token(guess)
    if not value:
        return False
    if level == "SAFE":
        return bool(_SAFE_RE.match(value))
    if level == "MEDIUM":
        return bool(_SUIT_RE.match(value))
    if level == "BOLD":
        return parse_card_code(value) is not None
    return False


def calculate_guess_points(level: str, guess: Any, secret_card: str, vault_value: int) -> int:
    """
    Points de base d'un pari (avant le bonus/malus d'appel du coffre).

    - SAFE   : bonne couleur -> floor(v/4), sinon 0
    - MEDIUM : bonne suit    -> floor(v/2), sinon -1
    - BOLD   : carte exacte  -> v,          sinon -3
    """
    secret = parse_card_code(secret_card)
    if secret is None:
        raise ValueError(f"Invalid secret card: {secret_card}")
    value = normalize_guess(guess)

    if level == "SAFE":
        return vault_value // 4 if value == color_of_suit(secret.suit) else 0
    if level == "MEDIUM":
        return vault_value // 2 if value == secret.suit else -1

    parsed = parse_card_code(value)
    if parsed is None:
        return -3
    return vault_value if parsed == secret else -3


def apply_caller_modifier(points: int) -> int:
    """Bonus/malus de l'appelant du coffre: +1 si son score est positif, -1 sinon."""
    return points + 1 if points > 0 else points - 1


def card_facts(secret_card: str) -> dict:
    """Faits dérivés de la carte secrète transmis à l'analyse IA (jamais plus)."""
    parsed = parse_card_code(secret_card)
    if parsed is None:
        raise ValueError(f"Invalid secret card: {secret_card}")
    return {
        "code": parsed.code,
        "rank": parsed.rank,
        "rankValue": rank_value(parsed.rank),
        "suit": parsed.suit,
        "color": color_of_suit(parsed.suit),
        "isFaceCard": parsed.rank in ("J", "Q", "K"),
        "isAce": parsed.rank == "A",
    }
