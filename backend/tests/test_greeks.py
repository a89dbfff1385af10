from datetime import date

import pytest

from paper_trading.services.greeks import Greeks, compute_greeks, erf, norm_cdf

TODAY = date(2025, 1, 6)
EXPIRY = date(2025, 2, 5)


def test_erf_approximation_is_close_to_reference_values():
    assert erf(0.0) == pytest.approx(0.0, abs=1e-6)
    assert erf(1.0) == pytest.approx(0.8427007, abs=1e-6)
    assert erf(-1.0) == pytest.approx(-0.8427007, abs=1e-6)
    assert norm_cdf(0.0) == pytest.approx(0.5, abs=1e-6)


def test_call_and_put_share_gamma_and_vega():
    call = compute_greeks(22000, "CE", EXPIRY, 22000.0, today=TODAY)
    put = compute_greeks(22000, "PE", EXPIRY, 22000.0, today=TODAY)

    assert 0.5 < call.delta < 0.6
    assert -0.5 < put.delta < -0.4
    assert call.delta - put.delta == pytest.approx(1.0, abs=1e-3)
    assert call.gamma == put.gamma
    assert call.vega == put.vega
    assert call.theta < 0
    assert call.rho > 0 > put.rho


def test_expiry_accepts_iso_string():
    assert compute_greeks(22000, "CE", "2025-02-05", 22000.0, today=TODAY) == compute_greeks(
        22000, "CE", EXPIRY, 22000.0, today=TODAY
    )


@pytest.mark.parametrize(
    ("option_type", "spot", "expected_delta"),
    [
        ("CE", 22100.0, 1.0),
        ("CE", 21900.0, 0.0),
        ("PE", 21900.0, -1.0),
        ("PE", 22100.0, 0.0),
    ],
)
def test_expired_contract_reports_intrinsic_delta_only(option_type, spot, expected_delta):
    greeks = compute_greeks(22000, option_type, TODAY, spot, today=TODAY)
    assert greeks == Greeks(delta=expected_delta)


@pytest.mark.parametrize(
    ("strike", "option_type", "expiry", "spot"),
    [
        (None, "CE", EXPIRY, 22000.0),
        (22000, "FUT", EXPIRY, 22000.0),
        (22000, "CE", None, 22000.0),
        (22000, "CE", EXPIRY, None),
        (22000, "CE", EXPIRY, 0.0),
        (0, "PE", EXPIRY, 22000.0),
    ],
)
def test_unusable_inputs_give_zeros(strike, option_type, expiry, spot):
    assert compute_greeks(strike, option_type, expiry, spot, today=TODAY) == Greeks()


def test_rounding_precision():
    greeks = compute_greeks(21500, "CE", EXPIRY, 22000.0, today=TODAY)
    assert greeks.delta == round(greeks.delta, 4)
    assert greeks.theta == round(greeks.theta, 2)
    assert set(greeks.as_dict()) == {"delta", "gamma", "theta", "vega", "rho"}
