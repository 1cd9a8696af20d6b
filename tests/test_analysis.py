import os

import numpy as np
import pandas as pd
import pytest

import ssglm as ss


@pytest.fixture
def frame():
    beta = np.array([0.0, 1.5, 0.0, -1.0])
    X, y, _ = ss.simulate_data(160, beta, link="logit", rng_seed=4)
    df = pd.DataFrame({"a": 2.0 * X[:, 1] + 5.0, "b": X[:, 2], "c": X[:, 3] - 1.0,
                       "outcome": y})
    df.loc[[3, 17], "b"] = np.nan
    return df


def test_reference_fit_matches_sampler(logit_data):
    X, y, _ = logit_data
    prior = ss.SpikeSlabPrior(always_include=[0, 1, 2])
    mcmc = ss.fit_reference(X, y, prior=prior, num_warmup=500,
                            num_samples=2000, rng_seed=0)
    ref_mean = np.asarray(mcmc.get_samples()["beta"]).mean(axis=0)
    result = ss.fit(X, y, prior=prior, num_warmup=1000, num_samples=4000,
                    rng_seed=0, progress_bar=False, print_summary=False)
    np.testing.assert_allclose(result.get_samples()["beta"].mean(axis=0),
                               ref_mean, atol=0.1)


def test_reference_fit_probit(sparse_probit_data):
    X, y, beta = sparse_probit_data
    mcmc = ss.fit_reference(X, y, link="probit", num_warmup=300,
                            num_samples=500)
    ref_mean = np.asarray(mcmc.get_samples()["beta"]).mean(axis=0)
    np.testing.assert_allclose(ref_mean, beta, atol=0.3)


def test_crossvalidate(logit_data):
    X, y, _ = logit_data
    out = ss.crossvalidate(X, y, K=2, num_warmup=50, num_samples=100,
                           max_workers=1)
    assert out["probs"].shape == (200,)
    assert sorted(out["y"]) == sorted(y)
    assert 0.5 < out["c_stat"] <= 1.0
    assert 0.0 < out["threshold"] < 1.0


def test_run_analysis(frame, tmp_path):
    stem = str(tmp_path / "ra")
    out = ss.run_analysis(frame, "outcome", ["a", "b", "c"], stem,
                          validation_size=0.3, num_warmup=100,
                          num_samples=200, num_chains=1, max_workers=1)
    assert out["N"] == 158
    assert out["feature_cols"] == ["Intercept", "a", "b", "c"]
    assert not out["holdout"]["threshold_tuned_on_test"]
    assert out["summary"]["inclusion_prob"].iloc[0] == 1.0
    for suffix in ("_summary.csv", "_diagnostics.csv", "_forest.pdf",
                   "_inclusion.pdf", "_trace.pdf", "_autocorr.pdf", "_roc.pdf"):
        assert os.path.exists(stem + suffix)


def test_run_analysis_crossvalidate(frame, tmp_path):
    out = ss.run_analysis(frame, "outcome", ["a", "b", "c"],
                          str(tmp_path / "cv"), link="probit",
                          crossvalidate_=True, K=2, num_warmup=50,
                          num_samples=100, num_chains=1, max_workers=1)
    assert "cv" in out
    assert out["cv"]["probs"].shape == (158,)


def test_run_analysis_rejects_non_binary(frame, tmp_path):
    frame["outcome"] = frame["outcome"] * 2
    with pytest.raises(ValueError, match="binary"):
        ss.run_analysis(frame, "outcome", ["a"], str(tmp_path / "x"))
