"""
Numerical core tests: wad arithmetic, exp/ln, the LMSR cost and price
functions, liquidity sizing, and the pricing layer on top of them.
"""

import math
import random

import pytest

from amm import lmsr
from amm.errors import (
    InsufficientLiquidity, InsufficientShares, InvalidArgument, InvalidOption,
    InvalidOptionCount, InvalidQuantity, InvariantViolation, LengthMismatch,
)
from amm.fixed_point import (
    EXP_SATURATION, LN2, SCALE, div_down, div_up, exp_neg, format_wad,
    from_wad, ln, mul_down, mul_up, to_wad,
)
from amm.lmsr import (
    LN_TABLE, PROBABILITY_CAP, PROBABILITY_FLOOR, compute_liquidity_param,
    cost, ln_n, max_loss, probabilities,
)
from amm.models import Market, Option
from amm.pricing import (
    calculate_cost, calculate_cost_from_option_state, compute_buy_delta,
    compute_sell_delta, to_tokens, update_current_prices, validate_prices,
)


B = 100 * SCALE


def _market(shares, b=B, payout=SCALE):
    return Market(
        id=1, creator="admin", question="q",
        options=[Option(name=f"o{i}", shares=q) for i, q in enumerate(shares)],
        b=b, payout_per_share=payout, admin_liquidity=100 * SCALE,
        trading_start=0, trading_end=1, created_at=0,
    )


def _assert_valid(p):
    assert sum(p) == SCALE
    for pi in p:
        assert PROBABILITY_FLOOR <= pi <= PROBABILITY_CAP


# ---------------------------------------------------------------------------
# Fixed point
# ---------------------------------------------------------------------------

class TestArithmetic:

    def test_rounding_directions(self):
        assert mul_down(1, 1) == 0
        assert mul_up(1, 1) == 1
        assert mul_down(3 * SCALE, SCALE // 2) == 3 * SCALE // 2
        assert div_down(SCALE, 3 * SCALE) == 333333333333333333
        assert div_up(SCALE, 3 * SCALE) == 333333333333333334

    def test_exact_products_agree(self):
        a, b = 7 * SCALE, 3 * SCALE // 4
        assert mul_up(a, b) == mul_down(a, b)


class TestExpNeg:

    def test_zero(self):
        assert exp_neg(0) == SCALE

    def test_known_values(self):
        assert abs(exp_neg(SCALE) - 367879441171442321) <= 1
        assert abs(exp_neg(LN2) - SCALE // 2) <= 2
        assert abs(exp_neg(10 * SCALE) - 45399929762484) <= 1

    def test_matches_float(self):
        rng = random.Random(7)
        for _ in range(200):
            x = rng.randrange(0, 40 * SCALE)
            expected = math.exp(-x / SCALE) * SCALE
            assert abs(exp_neg(x) - expected) <= max(2, expected * 1e-12)

    def test_saturates(self):
        assert exp_neg(EXP_SATURATION) == 0
        assert exp_neg(10 ** 6 * SCALE) == 0

    def test_monotone_non_increasing(self):
        xs = sorted(random.Random(3).randrange(0, 45 * SCALE)
                    for _ in range(300))
        values = [exp_neg(x) for x in xs]
        assert all(a >= b for a, b in zip(values, values[1:]))

    def test_negative_rejected(self):
        with pytest.raises(InvalidArgument):
            exp_neg(-1)


class TestLn:

    def test_one(self):
        assert ln(SCALE) == 0

    def test_known_values(self):
        assert abs(ln(2 * SCALE) - LN2) <= 1
        assert abs(ln(2718281828459045235) - SCALE) <= 2
        assert abs(ln(SCALE // 2) + LN2) <= 2

    def test_table_agrees(self):
        for n, value in LN_TABLE.items():
            assert abs(ln(n * SCALE) - value) <= 2

    def test_matches_float(self):
        rng = random.Random(11)
        for _ in range(200):
            y = rng.randrange(1, 10 ** 6 * SCALE)
            expected = math.log(y / SCALE) * SCALE
            assert abs(ln(y) - expected) <= max(1000, abs(expected) * 1e-12)

    def test_monotone(self):
        ys = sorted(random.Random(5).randrange(1, 50 * SCALE)
                    for _ in range(300))
        values = [ln(y) for y in ys]
        assert all(a <= b for a, b in zip(values, values[1:]))

    def test_non_positive_rejected(self):
        with pytest.raises(InvalidArgument):
            ln(0)
        with pytest.raises(InvalidArgument):
            ln(-SCALE)


class TestWadConversion:

    def test_parse(self):
        assert to_wad("1.5") == 3 * SCALE // 2
        assert to_wad(" 10 ") == 10 * SCALE
        assert to_wad(3) == 3 * SCALE
        assert to_wad("0.000000000000000001") == 1

    def test_rejects_sub_wei(self):
        with pytest.raises(InvalidArgument):
            to_wad("0.0000000000000000001")

    def test_rejects_garbage(self):
        for value in ("abc", "", "nan", "inf"):
            with pytest.raises(InvalidArgument):
                to_wad(value)

    def test_format(self):
        assert format_wad(0) == "0"
        assert format_wad(3 * SCALE // 2) == "1.5"
        assert format_wad(10 * SCALE) == "10"
        assert format_wad(1) == "0.000000000000000001"
        assert format_wad(-SCALE // 4) == "-0.25"

    def test_large_values_keep_every_digit(self):
        x = 123456789012345678901234567890123
        assert to_wad(format_wad(x)) == x
        assert str(from_wad(x)) == "123456789012345.678901234567890123"


# ---------------------------------------------------------------------------
# LMSR
# ---------------------------------------------------------------------------

class TestCost:

    def test_empty(self):
        assert cost(B, []) == 0

    def test_uniform_is_b_ln_n(self):
        for n in range(2, 11):
            expected = B * LN_TABLE[n] // SCALE
            assert abs(cost(B, [0] * n) - expected) <= 1000

    def test_shift_invariance(self):
        # C(q + k) = C(q) + k
        shares = [3 * SCALE, 0, 17 * SCALE]
        k = 5 * SCALE
        shifted = [q + k for q in shares]
        assert abs(cost(B, shifted) - cost(B, shares) - k) <= 100

    def test_bounded_by_max_plus_b_ln_n(self):
        shares = [40 * SCALE, 10 * SCALE, 0]
        c = cost(B, shares)
        assert max(shares) <= c <= max(shares) + B * LN_TABLE[3] // SCALE + 1

    def test_no_overflow_on_huge_positions(self):
        shares = [10 ** 12 * SCALE, 0]
        c = cost(SCALE, shares)
        assert abs(c - shares[0]) <= SCALE

    def test_increasing_in_each_coordinate(self):
        base = [SCALE, 2 * SCALE, 0]
        c0 = cost(B, base)
        for i in range(3):
            bumped = list(base)
            bumped[i] += SCALE
            assert cost(B, bumped) > c0

    def test_bad_b(self):
        with pytest.raises(InvalidArgument):
            cost(0, [0, 0])


class TestProbabilities:

    def test_empty(self):
        assert probabilities(B, []) == []

    def test_single_outcome_rejected(self):
        with pytest.raises(InvalidOptionCount):
            probabilities(B, [0])

    def test_uniform_two(self):
        assert probabilities(B, [0, 0]) == [SCALE // 2, SCALE // 2]

    def test_uniform_three_residue_goes_to_one_bucket(self):
        p = probabilities(B, [0, 0, 0])
        assert sum(p) == SCALE
        assert sorted(p) == [333333333333333333, 333333333333333333,
                             333333333333333334]

    def test_always_sums_to_one(self):
        rng = random.Random(42)
        for _ in range(100):
            n = rng.randint(2, 10)
            shares = [rng.randrange(0, 500 * SCALE) for _ in range(n)]
            _assert_valid(probabilities(B, shares))

    def test_cap(self):
        p = probabilities(B, [1000 * B // SCALE * SCALE, 0])
        assert p[0] == PROBABILITY_CAP
        assert p[1] == SCALE - PROBABILITY_CAP

    def test_cap_many_options(self):
        p = probabilities(B, [0] * 9 + [2000 * SCALE])
        _assert_valid(p)
        assert p[9] == PROBABILITY_CAP
        assert len(set(p[:9])) <= 2

    def test_floor(self):
        p = probabilities(SCALE, [0, 50 * SCALE, 50 * SCALE])
        _assert_valid(p)
        assert p[0] == PROBABILITY_FLOOR

    def test_more_shares_higher_price(self):
        p0 = probabilities(B, [0, 0, 0])
        p1 = probabilities(B, [10 * SCALE, 0, 0])
        assert p1[0] > p0[0]
        assert p1[1] < p0[1]

    def test_matches_softmax(self):
        shares = [10 * SCALE, 25 * SCALE, 0, 5 * SCALE]
        exps = [math.exp(q / B) for q in shares]
        total = sum(exps)
        for pi, e in zip(probabilities(B, shares), exps):
            assert abs(pi / SCALE - e / total) < 1e-12


class TestLiquiditySizing:

    def test_ln_n(self):
        assert ln_n(2) == LN_TABLE[2]
        with pytest.raises(InvalidOptionCount):
            ln_n(1)
        with pytest.raises(InvalidOptionCount):
            ln_n(11)

    def test_b_respects_coverage(self):
        seed = 100 * SCALE
        for n in range(2, 11):
            b = compute_liquidity_param(seed, n, SCALE)
            loss = max_loss(b, n, SCALE)
            assert loss <= seed
            assert loss >= seed * 89 // 100

    def test_payout_scales_b_down(self):
        seed = 100 * SCALE
        b1 = compute_liquidity_param(seed, 2, SCALE)
        b2 = compute_liquidity_param(seed, 2, 2 * SCALE)
        assert abs(b1 - 2 * b2) <= 2

    def test_clamped_b_that_overshoots_seed_rejected(self):
        # The seed alone would give b < 1, which clamps up to MIN_B.
        with pytest.raises(InsufficientLiquidity):
            compute_liquidity_param(SCALE // 10, 2, SCALE)

    def test_clamped_to_max(self):
        b = compute_liquidity_param(10 ** 15 * SCALE, 2, SCALE)
        assert b == lmsr.MAX_B

    def test_zero_seed_rejected(self):
        with pytest.raises(InsufficientLiquidity):
            compute_liquidity_param(0, 2, SCALE)

    def test_bad_payout_rejected(self):
        with pytest.raises(InvalidArgument):
            compute_liquidity_param(100 * SCALE, 2, 0)


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

class TestPricing:

    def test_cost_length_checked(self):
        m = _market([0, 0])
        with pytest.raises(LengthMismatch):
            calculate_cost(m, [0, 0, 0])
        assert calculate_cost_from_option_state(m, m.options) == cost(B, [0, 0])

    def test_validate_prices(self):
        validate_prices([SCALE // 2, SCALE // 2])
        validate_prices([SCALE // 2, SCALE // 2 - 3])
        with pytest.raises(InvariantViolation):
            validate_prices([SCALE + 1, 0])
        with pytest.raises(InvariantViolation):
            validate_prices([SCALE // 2, SCALE // 4])
        with pytest.raises(InvariantViolation):
            validate_prices([-1, SCALE + 1])

    def test_update_current_prices_writes_all(self):
        m = _market([10 * SCALE, 0, 0])
        prices = update_current_prices(m)
        assert m.prices == prices
        assert sum(prices) == SCALE

    def test_buy_delta_matches_cost_difference(self):
        m = _market([5 * SCALE, 0])
        delta, after = compute_buy_delta(m, 1, 3 * SCALE)
        assert after == [5 * SCALE, 3 * SCALE]
        assert delta == cost(B, after) - cost(B, m.shares)
        # Market state untouched
        assert m.shares == [5 * SCALE, 0]

    def test_sell_delta(self):
        m = _market([5 * SCALE, 0])
        delta, after = compute_sell_delta(m, 0, 2 * SCALE)
        assert after == [3 * SCALE, 0]
        assert delta == cost(B, m.shares) - cost(B, after)

    def test_sell_more_than_outstanding(self):
        m = _market([5 * SCALE, 0])
        with pytest.raises(InsufficientShares):
            compute_sell_delta(m, 1, SCALE)

    def test_bad_inputs(self):
        m = _market([0, 0])
        with pytest.raises(InvalidQuantity):
            compute_buy_delta(m, 0, 0)
        with pytest.raises(InvalidOption):
            compute_buy_delta(m, 2, SCALE)
        with pytest.raises(InvalidOption):
            compute_sell_delta(m, -1, SCALE)

    def test_buy_cost_below_quantity(self):
        m = _market([0, 0])
        delta, _ = compute_buy_delta(m, 0, 10 * SCALE)
        assert 5 * SCALE < delta < 10 * SCALE

    def test_split_buys_never_cheaper(self):
        m = _market([0, 0], payout=3 * SCALE)
        whole, _ = compute_buy_delta(m, 0, 9 * SCALE)
        whole_tokens = to_tokens(m, whole, round_up=True)

        split_tokens = 0
        for _ in range(3):
            delta, after = compute_buy_delta(m, 0, 3 * SCALE)
            split_tokens += to_tokens(m, delta, round_up=True)
            for option, q in zip(m.options, after):
                option.shares = q
        assert split_tokens >= whole_tokens

    def test_to_tokens_rounding(self):
        m = _market([0, 0], payout=SCALE // 3)
        assert to_tokens(m, 1, round_up=True) == 1
        assert to_tokens(m, 1, round_up=False) == 0
