import os

import numpy as np
import pytest

import ssglm as ss


def test_geweke_stationary_chain():
    x = np.random.default_rng(0).normal(size=2000)
    assert abs(ss.geweke(x)) < 3


def test_geweke_trending_chain():
    rng = np.random.default_rng(1)
    x = np.linspace(0, 1, 2000) + 0.1 * rng.normal(size=2000)
    assert abs(ss.geweke(x)) > 2


def test_geweke_constant_chain():
    assert ss.geweke(np.ones(100)) == 0.0


def test_geweke_errors():
    with pytest.raises(ValueError):
        ss.geweke(np.ones(100), first=0.6, last=0.6)
    with pytest.raises(ValueError):
        ss.geweke(np.ones(10))


def test_autocorrelation():
    rng = np.random.default_rng(2)
    # AR(1) with coefficient 0.9
    x = np.zeros(5000)
    for t in range(1, len(x)):
        x[t] = 0.9 * x[t - 1] + rng.normal()
    acf = ss.autocorrelation(x, lags=(1, 10, 10000))
    assert acf[1] == pytest.approx(0.9, abs=0.05)
    assert acf[10] == pytest.approx(0.9 ** 10, abs=0.1)
    assert np.isnan(acf[10000])


def test_convergence_diagnostics(small_probit_result):
    df = ss.convergence_diagnostics(small_probit_result, lags=(1, 5))
    assert list(df["parameter"]) == small_probit_result.feature_names + ["w", "log_post"]
    assert {"n_eff", "r_hat", "geweke_z", "acf_lag1", "acf_lag5"} <= set(df.columns)


def test_convergence_diagnostics_warns(small_probit_result, capsys):
    ss.convergence_diagnostics(small_probit_result, n_eff_min=1e9)
    assert "Warning" in capsys.readouterr().out


def test_summary_report(small_probit_result, tmp_path):
    path = str(tmp_path / "summary.csv")
    df = ss.summary_report(small_probit_result, path)
    assert os.path.exists(path)
    assert len(df) == 6


def test_inference_data(small_probit_result):
    idata = small_probit_result.to_inference_data()
    assert idata.posterior["beta"].shape == (2, 200, 6)


@pytest.mark.parametrize("plot", [ss.plot_trace, ss.plot_autocorr,
                                  ss.plot_forest, ss.plot_inclusion])
def test_result_plots(small_probit_result, tmp_path, plot):
    path = plot(small_probit_result, str(tmp_path / "fit"))
    assert os.path.exists(path)


def test_plot_roc(tmp_path):
    roc = ss.roc_curve([0, 1, 0, 1], [0.2, 0.7, 0.4, 0.9])
    path = ss.plot_roc(roc, str(tmp_path / "fit"), c_stat=1.0)
    assert os.path.exists(path)
