import re
from typing import Optional

DEFAULT_PREFIX = "GRP-SDS"
FALLBACK_ABBREVIATION = "DR"


def code_pattern(prefix: str = DEFAULT_PREFIX) -> re.Pattern:
    return re.compile(rf"^{re.escape(prefix)}(\d{{3,}})-([A-Z]{{2}})$")


def driver_abbreviation(name: Optional[str]) -> str:
    """First two letters of the driver's first name, uppercased."""
    first_name = name.split()[0] if name and name.strip() else ""
    letters = [c for c in first_name.upper() if "A" <= c <= "Z"]
    if len(letters) < 2:
        return FALLBACK_ABBREVIATION
    return "".join(letters[:2])


def format_code(sequence: int, name: Optional[str], prefix: str = DEFAULT_PREFIX) -> str:
    # GRP-SDS001-AY
    return f"{prefix}{sequence:03d}-{driver_abbreviation(name)}"


def normalize_code(code: str) -> str:
    return code.strip().upper()


def is_valid_code(code: str, prefix: str = DEFAULT_PREFIX) -> bool:
    return bool(code_pattern(prefix).match(code))


def code_sequence(code: str, prefix: str = DEFAULT_PREFIX) -> Optional[int]:
    match = code_pattern(prefix).match(code)
    return int(match.group(1)) if match else None
