import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest

import ssglm as ss


@pytest.fixture(scope="session")
def logit_data():
    """n=200 draws from a logit model with beta=(1, -2, 0.5)."""
    beta = np.array([1.0, -2.0, 0.5])
    X, y, probs = ss.simulate_data(200, beta, link="logit", rng_seed=11)
    return X, y, beta


@pytest.fixture(scope="session")
def sparse_probit_data():
    """Intercept plus five covariates of which only 1 and 3 are active."""
    beta = np.array([0.3, 1.0, 0.0, -1.0, 0.0, 0.0])
    X, y, probs = ss.simulate_data(1000, beta, link="probit", rng_seed=5)
    return X, y, beta


@pytest.fixture(scope="session")
def small_probit_result(sparse_probit_data):
    X, y, _ = sparse_probit_data
    prior = ss.SpikeSlabPrior(always_include=[0])
    return ss.fit(X[:300], y[:300], link="probit", prior=prior,
                  num_warmup=100, num_samples=200, num_chains=2,
                  max_workers=1, rng_seed=3, progress_bar=False,
                  print_summary=False)
