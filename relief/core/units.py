from decimal import ROUND_DOWN, Decimal

USDC_DECIMALS = 6
_SCALE = Decimal(10) ** USDC_DECIMALS


def to_units(amount) -> int:
    """Convert a decimal USDC amount to integer base units, truncating dust."""
    if amount is None:
        return 0
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((value * _SCALE).to_integral_value(rounding=ROUND_DOWN))


def from_units(units: int) -> Decimal:
    return (Decimal(int(units)) / _SCALE).quantize(Decimal(1) / _SCALE)


def format_units(units: int) -> str:
    return format(from_units(units), "f")


def normalize_hex(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).strip().lower()
    if not text:
        return ""
    return text if text.startswith("0x") else f"0x{text}"


def to_bytes32(value: str | bytes) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        raw = bytes.fromhex(normalize_hex(value)[2:])
    if len(raw) > 32:
        raise ValueError(f"value does not fit in bytes32: {value!r}")
    return raw.rjust(32, b"\x00")


def is_bytes32_hex(value: str | None) -> bool:
    text = normalize_hex(value)
    if len(text) != 66:
        return False
    try:
        int(text[2:], 16)
    except ValueError:
        return False
    return True
