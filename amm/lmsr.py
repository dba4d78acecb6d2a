"""
LMSR (Logarithmic Market Scoring Rule). Pure math, no state.

All functions take wad ints (see amm.fixed_point) and return wad ints.
The caller (pricing / trading) handles state, token conversion and fees.

Notation:
    shares: list of q_i, outstanding shares per outcome (wad)
    b: liquidity parameter in shares (wad); worst-case loss = b * ln(n)

Prices are the softmax of q/b, clamped so that no outcome is ever quoted
at exactly 0 or exactly 1:

    PROBABILITY_FLOOR <= p_i <= PROBABILITY_CAP,  sum(p) == SCALE
"""

from amm.errors import (
    InvalidArgument, InvalidOptionCount, InsufficientLiquidity,
    InvariantViolation,
)
from amm.fixed_point import SCALE, exp_neg, ln, mul_up


PROBABILITY_CAP = 95 * SCALE // 100          # 0.95
PROBABILITY_FLOOR = SCALE // 10 ** 12        # 1e-12

MIN_OPTIONS = 2
MAX_OPTIONS = 10

DEFAULT_COVERAGE_RATIO = 9 * SCALE // 10     # worst-case loss / seed
MIN_B = SCALE
MAX_B = 10 ** 9 * SCALE

# ln(n) for the supported outcome counts, floored to wad.
LN_TABLE: dict[int, int] = {
    2: 693147180559945309,
    3: 1098612288668109691,
    4: 1386294361119890618,
    5: 1609437912434100374,
    6: 1791759469228055000,
    7: 1945910149055313305,
    8: 2079441541679835928,
    9: 2197224577336219382,
    10: 2302585092994045684,
}


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _check_b(b: int) -> None:
    if b <= 0:
        raise InvalidArgument(f"liquidity parameter must be positive, got {b}")


def _shifted(shares: list[int], b: int) -> tuple[int, list[int]]:
    """
    Log-sum-exp shift. Returns (m, [e^(s_i - m)]) where s_i = q_i / b
    and m = max(s_i). The largest term is exactly SCALE, so the sum is
    never zero and never overflows.
    """
    scaled = [q * SCALE // b for q in shares]
    m = max(scaled)
    return m, [exp_neg(m - s) for s in scaled]


def _argmax(p: list[int]) -> int:
    return max(range(len(p)), key=lambda i: p[i])


def _apply_cap(p: list[int]) -> None:
    # The cap is above 0.5, so at most one outcome can exceed it.
    for i, pi in enumerate(p):
        if pi <= PROBABILITY_CAP:
            continue
        excess = pi - PROBABILITY_CAP
        p[i] = PROBABILITY_CAP
        others = [j for j in range(len(p)) if j != i]
        rest = sum(p[j] for j in others)
        if rest == 0:
            for j in others:
                p[j] += excess // len(others)
        else:
            for j in others:
                p[j] += excess * p[j] // rest
        return


def _apply_floor(p: list[int]) -> None:
    for j, pj in enumerate(p):
        if pj < PROBABILITY_FLOOR:
            deficit = PROBABILITY_FLOOR - pj
            p[j] = PROBABILITY_FLOOR
            p[_argmax(p)] -= deficit


def _renormalize(p: list[int]) -> None:
    """Move the rounding residue onto the largest bucket that can take it."""
    drift = SCALE - sum(p)
    if drift == 0:
        return
    for i in sorted(range(len(p)), key=lambda i: -p[i]):
        if PROBABILITY_FLOOR <= p[i] + drift <= PROBABILITY_CAP:
            p[i] += drift
            return
    raise InvariantViolation(
        f"cannot renormalize prices, residual drift {drift}", prices=list(p))


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

def cost(b: int, shares: list[int]) -> int:
    """
    Cost function: C(q) = b * ln(Σ e^(q_i / b))

    Evaluated as b * (m + ln(Σ e^(q_i/b - m))). Not useful on its own:
    trading costs are always C(after) - C(before).
    """
    _check_b(b)
    if not shares:
        return 0
    m, exps = _shifted(shares, b)
    return b * (m + ln(sum(exps))) // SCALE


def probabilities(b: int, shares: list[int]) -> list[int]:
    """
    Current prices (probabilities) for each outcome.

    p_i = e^(q_i / b) / Σ e^(q_j / b), then cap, floor, renormalize.
    Always sums to exactly SCALE.
    """
    _check_b(b)
    if not shares:
        return []
    if len(shares) < MIN_OPTIONS:
        raise InvalidOptionCount(
            f"need at least {MIN_OPTIONS} outcomes, got {len(shares)}")
    _, exps = _shifted(shares, b)
    total = sum(exps)
    p = [e * SCALE // total for e in exps]
    _apply_cap(p)
    _apply_floor(p)
    _renormalize(p)
    return p


# ---------------------------------------------------------------------------
# Liquidity
# ---------------------------------------------------------------------------

def ln_n(n: int) -> int:
    try:
        return LN_TABLE[n]
    except KeyError:
        raise InvalidOptionCount(
            f"outcome count must be in [{MIN_OPTIONS}, {MAX_OPTIONS}], got {n}")


def max_loss(b: int, n: int, payout_per_share: int) -> int:
    """Worst-case market maker loss in tokens: b * ln(n) * payout, rounded up."""
    return mul_up(mul_up(b, ln_n(n)), payout_per_share)


def compute_liquidity_param(initial_liquidity: int, n: int,
                            payout_per_share: int,
                            coverage_ratio: int = DEFAULT_COVERAGE_RATIO) -> int:
    """
    Size b from the seeded liquidity:

        b = coverage_ratio * initial_liquidity / (ln(n) * payout_per_share)

    clamped to [MIN_B, MAX_B]. The clamp can push the worst-case loss above
    the seed, so the result is verified and creation fails rather than
    launching an under-collateralized market.
    """
    log_n = ln_n(n)
    if payout_per_share <= 0:
        raise InvalidArgument("payout per share must be positive")
    if initial_liquidity <= 0:
        raise InsufficientLiquidity(
            "initial liquidity must be positive",
            initial_liquidity=initial_liquidity)

    b = coverage_ratio * initial_liquidity * SCALE // (log_n * payout_per_share)
    b = max(MIN_B, min(MAX_B, b))

    worst_case = max_loss(b, n, payout_per_share)
    if worst_case > initial_liquidity:
        raise InsufficientLiquidity(
            f"worst-case liability {worst_case} exceeds seeded liquidity "
            f"{initial_liquidity}",
            b=b, worst_case=worst_case, initial_liquidity=initial_liquidity)
    return b
