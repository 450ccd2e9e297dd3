"""Kubernetes resource quantities and Go-style durations.

Both formats come straight from the cluster API and from operator supplied
settings, so parsing here is strict: a malformed value raises ``ValueError``
instead of silently turning into zero.
"""
import math
import re
from datetime import timedelta
from typing import Optional

_BINARY_SUFFIXES = {
    'Ki': 1024,
    'Mi': 1024 ** 2,
    'Gi': 1024 ** 3,
    'Ti': 1024 ** 4,
    'Pi': 1024 ** 5,
    'Ei': 1024 ** 6,
}

_DECIMAL_SUFFIXES = {
    'n': 1e-9,
    'u': 1e-6,
    'm': 1e-3,
    '': 1,
    'k': 1e3,
    'M': 1e6,
    'G': 1e9,
    'T': 1e12,
    'P': 1e15,
    'E': 1e18,
}

_QUANTITY_RE = re.compile(
    r'^(?P<number>[+-]?(?:\d+(?:\.\d*)?|\.\d+))'
    r'(?:(?P<exponent>[eE][+-]?\d+)|(?P<suffix>Ki|Mi|Gi|Ti|Pi|Ei|n|u|m|k|M|G|T|P|E))?$'
)

_DURATION_PART_RE = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')

_BARE_NUMBER_RE = re.compile(r'^(?:\d+(?:\.\d*)?|\.\d+)$')

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1,
    'm': 60,
    'h': 3600,
}


def parse_quantity(value) -> float:
    """Parse a Kubernetes quantity ("512Mi", "1.5G", "250m", "1e3") into a float.

    Raises ValueError when the value is empty or not a valid quantity.
    """
    if value is None:
        raise ValueError("quantity must not be empty")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ValueError("quantity must not be empty")
    match = _QUANTITY_RE.match(text)
    if not match:
        raise ValueError(f"invalid quantity: {value!r}")
    number = float(match.group('number'))
    if match.group('exponent'):
        return number * (10 ** int(match.group('exponent')[1:]))
    suffix = match.group('suffix') or ''
    if suffix in _BINARY_SUFFIXES:
        return number * _BINARY_SUFFIXES[suffix]
    return number * _DECIMAL_SUFFIXES[suffix]


def memory_bytes(value) -> int:
    """Memory quantity rounded up to whole bytes."""
    return int(math.ceil(parse_quantity(value)))


def optional_memory_bytes(value) -> Optional[int]:
    """Like memory_bytes but maps missing or unparseable values to None."""
    if value is None or value == '':
        return None
    try:
        return memory_bytes(value)
    except ValueError:
        return None


def parse_duration(value) -> timedelta:
    """Parse a Go-style duration string such as "30m", "1h30m" or "90s".

    A bare number is taken as seconds.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=value)
    text = str(value or '').strip()
    if not text:
        raise ValueError("duration must not be empty")
    sign = 1
    if text[0] in '+-':
        sign = -1 if text[0] == '-' else 1
        text = text[1:]
    if text == '0':
        return timedelta(0)
    if _BARE_NUMBER_RE.match(text):
        return timedelta(seconds=sign * float(text))

    seconds = 0.0
    pos = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=sign * seconds)


def format_duration(delta: timedelta) -> str:
    """Render a timedelta compactly ("1h30m", "45s") for logs and PromQL ranges."""
    total = int(delta.total_seconds())
    if total <= 0:
        return '0s'
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    out = ''
    if hours:
        out += f'{hours}h'
    if minutes:
        out += f'{minutes}m'
    if seconds:
        out += f'{seconds}s'
    return out
