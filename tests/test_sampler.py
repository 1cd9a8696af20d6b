import numpy as np
import pytest
from sklearn.linear_model import LogisticRegression

import ssglm as ss


def test_truncated_normal_mean():
    rng = np.random.default_rng(0)
    z = ss.sample_latent(np.zeros(20000), np.ones(20000), rng)
    assert np.all(z > 0)
    # half-normal mean sqrt(2/pi)
    assert z.mean() == pytest.approx(np.sqrt(2 / np.pi), abs=0.03)


def test_truncated_normal_extreme_means():
    rng = np.random.default_rng(1)
    z_pos = ss.sample_latent(np.full(1000, -40.0), np.ones(1000), rng)
    z_neg = ss.sample_latent(np.full(1000, 40.0), np.zeros(1000), rng)
    assert np.all(np.isfinite(z_pos)) and np.all(z_pos >= 0)
    assert np.all(np.isfinite(z_neg)) and np.all(z_neg <= 0)


def test_probit_beta_conditional_flat_prior_is_ols():
    rng = np.random.default_rng(2)
    X = np.column_stack([np.ones(100), rng.normal(size=(100, 3))])
    z = X @ np.array([0.5, 1.0, -1.0, 0.0]) + rng.normal(size=100)
    p = X.shape[1]
    mean, _ = ss.probit_beta_conditional(X, z, np.ones(p), np.zeros(p), np.zeros(p))
    ols, *_ = np.linalg.lstsq(X, z, rcond=None)
    np.testing.assert_allclose(mean, ols, rtol=1e-8, atol=1e-10)


def test_probit_beta_conditional_excluded_keeps_prior():
    rng = np.random.default_rng(3)
    X = rng.normal(size=(50, 3))
    z = rng.normal(size=50)
    prior_mean = np.array([0.0, 2.0, 0.0])
    mean, _ = ss.probit_beta_conditional(X, z, np.array([1, 0, 1]),
                                         prior_mean, np.ones(3))
    assert mean[1] == pytest.approx(2.0)


def test_validate_inputs_errors():
    X = np.ones((4, 2))
    with pytest.raises(ValueError, match="binary"):
        ss.validate_inputs(X, [0, 1, 2, 1])
    with pytest.raises(ValueError, match="rows"):
        ss.validate_inputs(X, [0, 1, 1])
    with pytest.raises(ValueError, match="non-finite"):
        ss.validate_inputs(np.array([[1.0, np.nan]] * 4), [0, 1, 1, 0])
    with pytest.raises(ValueError):
        ss.validate_inputs(np.ones(4), [0, 1, 1, 0])
    with pytest.raises(ValueError, match="numeric"):
        ss.validate_inputs([["a", "b"]] * 4, [0, 1, 1, 0])


@pytest.mark.parametrize("kwargs", [
    {"link": "cauchit"},
    {"thin": 0},
    {"num_samples": 5, "thin": 10},
    {"num_chains": 0},
    {"feature_names": ["a"]},
])
def test_fit_rejects_bad_settings(logit_data, kwargs):
    X, y, _ = logit_data
    with pytest.raises(ValueError):
        ss.fit(X, y, num_warmup=10, progress_bar=False, **kwargs)


def test_standardize_leaves_intercept():
    rng = np.random.default_rng(4)
    X = np.column_stack([np.ones(30), rng.normal(5.0, 3.0, size=(30, 2))])
    Xs, mean, scale = ss.standardize(X)
    np.testing.assert_array_equal(Xs[:, 0], 1.0)
    np.testing.assert_allclose(Xs[:, 1:].mean(axis=0), 0.0, atol=1e-12)
    np.testing.assert_allclose(Xs[:, 1:].std(axis=0), 1.0)
    np.testing.assert_allclose((X - mean) / scale, Xs)


def test_reproducible_and_parallel_matches_sequential(logit_data):
    X, y, _ = logit_data
    kwargs = dict(link="logit", prior=ss.SpikeSlabPrior(always_include=[0]),
                  num_warmup=50, num_samples=100, num_chains=2, rng_seed=7,
                  progress_bar=False, print_summary=False)
    r1 = ss.fit(X, y, max_workers=1, **kwargs)
    r2 = ss.fit(X, y, max_workers=1, **kwargs)
    r3 = ss.fit(X, y, max_workers=2, **kwargs)
    for site in ("beta", "gamma", "w"):
        s1 = r1.get_samples(group_by_chain=True)[site]
        np.testing.assert_array_equal(s1, r2.get_samples(group_by_chain=True)[site])
        np.testing.assert_array_equal(s1, r3.get_samples(group_by_chain=True)[site])
    # chains get distinct streams
    b = r1.get_samples(group_by_chain=True)["beta"]
    assert not np.array_equal(b[0], b[1])


def test_result_shapes(logit_data):
    X, y, _ = logit_data
    result = ss.fit(X, y, num_warmup=20, num_samples=60, thin=3, num_chains=2,
                    max_workers=1, progress_bar=False, print_summary=False)
    assert result.num_chains == 2
    assert result.num_draws == 20
    samples = result.get_samples()
    assert samples["beta"].shape == (40, 3)
    assert samples["gamma"].shape == (40, 3)
    assert samples["w"].shape == (40,)
    assert set(np.unique(samples["gamma"])) <= {0, 1}
    assert np.all((samples["w"] > 0) & (samples["w"] < 1))
    assert result.acceptance_rate.shape == (2, 3)
    assert result.feature_names == ["beta[0]", "beta[1]", "beta[2]"]


def test_always_included_indicator_stays_on(sparse_probit_data):
    X, y, _ = sparse_probit_data
    result = ss.fit(X[:200], y[:200], link="probit",
                    prior=ss.SpikeSlabPrior(always_include=[0, 2]),
                    num_warmup=20, num_samples=100, progress_bar=False,
                    print_summary=False)
    gamma = result.get_samples()["gamma"]
    assert np.all(gamma[:, [0, 2]] == 1)
    assert result.acceptance_rate is None


def test_max_seconds_truncates(logit_data):
    X, y, _ = logit_data
    result = ss.fit(X, y, num_warmup=10, num_samples=100, max_seconds=1e-9,
                    progress_bar=False, print_summary=False)
    assert result.truncated
    assert result.num_draws < 100


def test_probit_inclusion_recovery(sparse_probit_data):
    X, y, _ = sparse_probit_data
    result = ss.fit(X, y, link="probit",
                    prior=ss.SpikeSlabPrior(always_include=[0]),
                    num_warmup=500, num_samples=2000, rng_seed=1,
                    progress_bar=False, print_summary=False)
    pip = ss.coefficient_summary(result)["inclusion_prob"].values
    assert pip[0] == 1.0
    assert pip[1] > 0.8 and pip[3] > 0.8
    assert np.all(pip[[2, 4, 5]] < 0.3)


def test_logit_inclusion_recovery():
    beta = np.array([0.0, 1.0, 0.0, -1.0, 0.0, 0.0])
    X, y, _ = ss.simulate_data(1000, beta, link="logit", rng_seed=8)
    result = ss.fit(X, y, link="logit",
                    prior=ss.SpikeSlabPrior(always_include=[0]),
                    num_warmup=500, num_samples=2000, rng_seed=2,
                    progress_bar=False, print_summary=False)
    pip = ss.coefficient_summary(result)["inclusion_prob"].values
    assert pip[1] > 0.8 and pip[3] > 0.8
    assert np.all(pip[[2, 4, 5]] < 0.3)


def test_logit_end_to_end(logit_data):
    X, y, beta_true = logit_data
    prior = ss.SpikeSlabPrior(always_include=[0, 1, 2])
    result = ss.fit(X, y, link="logit", prior=prior, num_warmup=1000,
                    num_samples=4000, num_chains=2, rng_seed=0,
                    max_workers=1, progress_bar=False, print_summary=False)
    summary = ss.coefficient_summary(result)

    # MAP under the same N(0, 1) prior
    map_fit = LogisticRegression(C=1.0, fit_intercept=False).fit(X, y)
    np.testing.assert_allclose(summary["mean"], map_fit.coef_[0], atol=0.3)
    np.testing.assert_allclose(summary["mean"], beta_true, atol=0.75)
    assert np.mean(summary["n_eff"] > 500) >= 0.8
    assert np.all(summary["r_hat"] < 1.05)
    rates = np.nanmean(result.acceptance_rate, axis=0)
    assert np.all((rates > 0.2) & (rates < 0.7))


def test_initial_chain_state():
    state = ss.ChainState.initial(4, ss.SpikeSlabPrior(a=1.0, b=3.0))
    np.testing.assert_array_equal(state.beta, 0.0)
    np.testing.assert_array_equal(state.gamma, 1)
    assert state.w == pytest.approx(0.25)
    assert state.z is None
    state.beta[:] = [1.0, 2.0, 3.0, 4.0]
    state.gamma[1] = 0
    np.testing.assert_array_equal(state.effective_beta, [1.0, 0.0, 3.0, 4.0])


def test_logit_end_to_end_recovers_truth():
    beta_true = np.array([1.0, -2.0, 0.5])
    X, y, _ = ss.simulate_data(200, beta_true, link="logit", rng_seed=14)
    result = ss.fit(X, y, link="logit",
                    prior=ss.SpikeSlabPrior(always_include=[0, 1, 2]),
                    num_warmup=1000, num_samples=4000, rng_seed=0,
                    progress_bar=False, print_summary=False)
    summary = ss.coefficient_summary(result)
    assert np.all(np.abs(summary["mean"] - beta_true) < 0.3)
    map_fit = LogisticRegression(C=1.0, fit_intercept=False).fit(X, y)
    np.testing.assert_allclose(summary["mean"], map_fit.coef_[0], atol=0.3)
    assert np.mean(summary["n_eff"] > 500) >= 0.8
