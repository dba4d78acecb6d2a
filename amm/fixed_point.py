"""
Fixed-point arithmetic at 1e18 scale ("wad"). Integers only, no floats.

Every quantity in the engine (shares, b, probabilities, token amounts)
is a Python int where SCALE (10**18) represents 1.0.

Transcendentals are evaluated at 1e36 internal precision and floored back
to 1e18, which keeps them monotone to the last wei:

    exp_neg(x) = e^-x      x >= 0, saturates to 0 past EXP_SATURATION
    ln(y)      = ln y      y > 0

Decimal is used only at the presentation boundary (to_wad / from_wad).
"""

from decimal import Decimal, InvalidOperation, ROUND_FLOOR, localcontext

from amm.errors import InvalidArgument


SCALE = 10 ** 18

# e^-42 < 1e-18: the floored wad result is already 0.
EXP_SATURATION = 42 * SCALE

_GUARD = 10 ** 18
_P = SCALE * _GUARD                      # internal precision, 1e36
_LN2_P = 693147180559945309417232121458176568
LN2 = _LN2_P // _GUARD

_MAX_SERIES_TERMS = 128


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------

def mul_down(a: int, b: int) -> int:
    return a * b // SCALE


def mul_up(a: int, b: int) -> int:
    return -((-a * b) // SCALE)


def div_down(a: int, b: int) -> int:
    return a * SCALE // b


def div_up(a: int, b: int) -> int:
    return -((-a * SCALE) // b)


def _tdiv(a: int, b: int) -> int:
    """Integer division truncating toward zero (b > 0)."""
    q = abs(a) // b
    return q if a >= 0 else -q


# ---------------------------------------------------------------------------
# Transcendentals
# ---------------------------------------------------------------------------

def exp_neg(x: int) -> int:
    """
    e^-x for x >= 0.

    x = k*ln2 + r with 0 <= r < ln2, so e^-x = e^-r / 2^k. The series for
    e^-r alternates; it is summed in a signed accumulator until the next
    term is zero, so no per-term clamping is needed.
    """
    if x < 0:
        raise InvalidArgument(f"exp_neg domain is x >= 0, got {x}")
    if x == 0:
        return SCALE
    if x >= EXP_SATURATION:
        return 0

    k, r = divmod(x * _GUARD, _LN2_P)
    total = _P
    term = _P
    for i in range(1, _MAX_SERIES_TERMS):
        term = term * r // (i * _P)
        if term == 0:
            break
        total += -term if i % 2 else term
    return (total >> k) // _GUARD


def ln(y: int) -> int:
    """
    Natural log of y > 0, floored to wad.

    Range reduction by halving/doubling into (0.5, 2.0], then the atanh
    series 2*(z + z^3/3 + z^5/5 + ...) with z = (y-1)/(y+1), |z| <= 1/3.
    """
    if y <= 0:
        raise InvalidArgument(f"ln domain is y > 0, got {y}")

    v = y * _GUARD
    k = 0
    while v > 2 * _P:
        v //= 2
        k += 1
    while v <= _P // 2:
        v *= 2
        k -= 1

    z = _tdiv((v - _P) * _P, v + _P)
    z2 = z * z // _P
    total = 0
    term = z
    n = 1
    while term != 0 and n < 2 * _MAX_SERIES_TERMS:
        total += _tdiv(term, n)
        term = _tdiv(term * z2, _P)
        n += 2
    return (2 * total + k * _LN2_P) // _GUARD


# ---------------------------------------------------------------------------
# Presentation boundary
# ---------------------------------------------------------------------------

def to_wad(value) -> int:
    """Parse a decimal string / Decimal / int into wad. Rejects sub-wei digits."""
    if isinstance(value, int):
        return value * SCALE
    try:
        d = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidArgument(f"not a number: {value!r}")
    if not d.is_finite():
        raise InvalidArgument(f"not a finite number: {value!r}")
    with localcontext() as ctx:
        ctx.prec = 100
        scaled = d.scaleb(18)
        whole = scaled.to_integral_value(rounding=ROUND_FLOOR)
    if whole != scaled:
        raise InvalidArgument(f"{value} exceeds precision (max 18 dp)")
    return int(whole)


def from_wad(x: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = 100
        return Decimal(x).scaleb(-18)


def format_wad(x: int) -> str:
    """Shortest plain decimal string: 1500000000000000000 -> '1.5'."""
    if x == 0:
        return "0"
    with localcontext() as ctx:
        ctx.prec = 100
        return f"{from_wad(x).normalize():f}"
