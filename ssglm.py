import os
import time
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import arviz as az
from scipy.linalg import cho_factor, cho_solve, solve_triangular
from scipy.special import expit, log_expit, ndtr, log_ndtr, ndtri, ndtri_exp, betaln
from sklearn import metrics
from sklearn.model_selection import train_test_split
from tqdm.auto import tqdm

import jax
import jax.numpy as jnp
from jax.scipy.special import log_ndtr as jax_log_ndtr
import numpyro as npyr
import numpyro.distributions as dist
from numpyro.infer import MCMC, NUTS
from numpyro.diagnostics import (autocorrelation as _np_autocorrelation,
                                 effective_sample_size, split_gelman_rubin)

# Ensure tqdm can detect a terminal width in non-TTY environments
# (cloud notebooks, piped output) so progress bars update in-place.
os.environ.setdefault("COLUMNS", "120")

__all__ = [
    "logit_link", "probit_link", "probit_quantile", "link_function",
    "bernoulli_loglik",
    "SpikeSlabPrior", "ChainState", "SpikeSlabResult",
    "validate_inputs", "standardize", "simulate_data",
    "sample_latent", "probit_beta_conditional",
    "fit", "fit_reference",
    "predict", "predict_proba", "bma_predict", "classify",
    "tune_threshold", "roc_curve", "cstatistic", "log_score", "brier_score",
    "classification_report", "calibration_table", "evaluate_holdout",
    "coefficient_summary", "summary_report",
    "autocorrelation", "geweke", "convergence_diagnostics",
    "crossvalidate",
    "plot_trace", "plot_autocorr", "plot_forest", "plot_inclusion",
    "plot_roc",
    "run_analysis",
]

LINKS = ("logit", "probit")
TARGET_ACCEPT = 0.44
ADAPT_INTERVAL = 50
# floor for log P(y_i | eta_i): a zero likelihood under perfect
# separation must not turn the acceptance ratio into nan
LOG_LIK_FLOOR = float(np.log(np.finfo(np.float64).tiny))
THRESHOLD_GRID = np.round(np.arange(0.01, 1.0, 0.01), 2)


# ---------------------------------------------------------------------------
# Link functions
# ---------------------------------------------------------------------------

def logit_link(eta):
    """Inverse logit, exp(eta) / (1 + exp(eta)).

    ``scipy.special.expit`` branches on the sign of *eta* internally, so
    large magnitudes neither overflow nor produce nan.
    """
    return expit(eta)


def probit_link(eta):
    """Standard normal CDF, Phi(eta)."""
    return ndtr(eta)


def probit_quantile(p):
    """Standard normal quantile function, the inverse of :func:`probit_link`."""
    return ndtri(p)


def _check_link(link):
    if link not in LINKS:
        raise ValueError(f"Unknown link: {link!r}. Use 'logit' or 'probit'.")


def link_function(link):
    """Return the inverse-link callable for ``"logit"`` or ``"probit"``."""
    _check_link(link)
    return logit_link if link == "logit" else probit_link


def _log_probs(eta, link):
    """log P(y=1) and log P(y=0) for a linear predictor."""
    if link == "logit":
        return log_expit(eta), log_expit(-eta)
    return log_ndtr(eta), log_ndtr(-eta)


def bernoulli_loglik(y, eta, link):
    """Bernoulli log-likelihood of binary *y* given linear predictor *eta*.

    Each observation's contribution is floored at ``LOG_LIK_FLOOR`` so
    that a likelihood of exactly zero gives a large negative finite value
    instead of -inf.
    """
    log_p, log_q = _log_probs(eta, link)
    ll = np.where(y == 1, log_p, log_q)
    return float(np.sum(np.maximum(ll, LOG_LIK_FLOOR)))


# ---------------------------------------------------------------------------
# Prior model
# ---------------------------------------------------------------------------

class SpikeSlabPrior:
    """Spike-and-slab prior over coefficients, inclusion indicators and w.

    ``beta_j | gamma_j = 1 ~ Normal(beta0_j, sigma0_j**2)``,
    ``gamma_j ~ Bernoulli(w)`` and ``w ~ Beta(a, b)``.  When
    ``gamma_j = 0`` the coefficient is still drawn from its Normal prior
    but does not enter the linear predictor.

    Parameters
    ----------
    beta0 : float or array (p,)
        Prior means of the coefficients.
    sigma0 : float or array (p,)
        Prior standard deviations of the coefficients.
    a, b : float
        Beta hyperprior on the shared inclusion probability.
    always_include : sequence of int or None
        Columns (typically the intercept) whose indicator is fixed at 1.
        These columns do not count towards the Beta update of w.
    """
    def __init__(self, beta0=0.0, sigma0=1.0, a=1.0, b=1.0,
                 always_include=None):
        if a <= 0 or b <= 0:
            raise ValueError(f"Beta hyperparameters must be positive, got a={a}, b={b}")
        if np.any(np.asarray(sigma0, dtype=np.float64) <= 0):
            raise ValueError("sigma0 must be positive")
        self.beta0 = beta0
        self.sigma0 = sigma0
        self.a = float(a)
        self.b = float(b)
        self.always_include = (None if always_include is None
                               else [int(j) for j in always_include])

    def __repr__(self):
        return (f"SpikeSlabPrior(beta0={self.beta0!r}, sigma0={self.sigma0!r}, "
                f"a={self.a}, b={self.b}, always_include={self.always_include!r})")

    def resolve(self, p):
        """Broadcast hyperparameters to *p* coefficients.

        Returns
        -------
        beta0 : ndarray (p,)
        sigma0 : ndarray (p,)
        selectable : ndarray of bool (p,)
            False for columns listed in ``always_include``.
        """
        out = []
        for name, value in [("beta0", self.beta0), ("sigma0", self.sigma0)]:
            arr = np.asarray(value, dtype=np.float64)
            if arr.ndim > 0 and arr.shape != (p,):
                raise ValueError(f"{name} has shape {arr.shape}, expected ({p},)")
            out.append(np.broadcast_to(arr, (p,)).copy())
        selectable = np.ones(p, dtype=bool)
        if self.always_include is not None:
            bad = [j for j in self.always_include if not -p <= j < p]
            if bad:
                raise ValueError(f"always_include indices {bad} out of range for p={p}")
            selectable[self.always_include] = False
        return out[0], out[1], selectable

    def log_density(self, beta, gamma, w):
        """Log joint prior density of (beta, gamma, w)."""
        beta = np.asarray(beta, dtype=np.float64)
        gamma = np.asarray(gamma)
        beta0, sigma0, selectable = self.resolve(len(beta))
        lp = np.sum(-0.5 * np.log(2 * np.pi) - np.log(sigma0)
                    - 0.5 * np.square((beta - beta0) / sigma0))
        g = gamma[selectable]
        lp += np.sum(g * np.log(w) + (1 - g) * np.log1p(-w))
        lp += ((self.a - 1) * np.log(w) + (self.b - 1) * np.log1p(-w)
               - betaln(self.a, self.b))
        return float(lp)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

def validate_inputs(X, y):
    """Check and convert a design matrix and binary labels.

    Returns
    -------
    X : ndarray (N, p) float64
    y : ndarray (N,) float64 with values in {0, 1}

    Raises
    ------
    ValueError
        For non-numeric values, wrong dimensions, mismatched row counts,
        non-finite entries or labels other than 0/1.
    """
    try:
        X = np.asarray(X, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValueError(f"X and y must be numeric: {e}") from e
    if X.ndim != 2:
        raise ValueError(f"X must be 2-dimensional, got shape {X.shape}")
    if y.ndim != 1:
        raise ValueError(f"y must be 1-dimensional, got shape {y.shape}")
    if X.shape[0] != y.shape[0]:
        raise ValueError(
            f"X has {X.shape[0]} rows but y has {y.shape[0]} entries")
    if X.shape[0] == 0:
        raise ValueError("X and y contain no observations")
    for name, arr in [("X", X), ("y", y)]:
        if not np.all(np.isfinite(arr)):
            n_bad = int((~np.isfinite(arr)).sum())
            raise ValueError(
                f"{name} contains {n_bad} non-finite values (NaN/Inf). "
                f"Clean the data before fitting.")
    unique_y = np.unique(y)
    if not np.all((unique_y == 0) | (unique_y == 1)):
        raise ValueError(f"y must be binary (0/1), got unique values: {unique_y}")
    return X, y


def standardize(X, intercept=True):
    """Centre and scale columns to zero mean and unit variance.

    Parameters
    ----------
    X : array (N, p)
        Design matrix.
    intercept : bool
        If True, column 0 is an intercept and is left unchanged.

    Returns
    -------
    X_std : ndarray (N, p)
    mean, scale : ndarray (p,)
        Apply to new data as ``(X_new - mean) / scale``.
    """
    X = np.asarray(X, dtype=np.float64)
    mean = X.mean(axis=0)
    scale = X.std(axis=0)
    scale[scale == 0] = 1.0  # avoid division by zero for constant cols
    if intercept:
        mean[0] = 0.0
        scale[0] = 1.0
    return (X - mean) / scale, mean, scale


def _check_standardized(X, tol=0.25):
    sd = X.std(axis=0)
    varying = sd > 0
    off = varying & ((np.abs(X.mean(axis=0)) > tol) | (np.abs(sd - 1.0) > tol))
    if off.any():
        print(f"Note: columns {np.flatnonzero(off).tolist()} are not standardized; "
              f"the default N(0, 1) slab assumes unit-scale covariates", flush=True)


def simulate_data(n, beta, link="logit", rng_seed=0):
    """Simulate a standardized design and binary outcome from a GLM.

    Column 0 is an intercept; the remaining ``len(beta) - 1`` columns are
    iid standard normal, standardized over the sample.

    Returns
    -------
    X : ndarray (n, p)
    y : ndarray (n,)
    probs : ndarray (n,)
        True success probabilities link(X @ beta).
    """
    beta = np.asarray(beta, dtype=np.float64)
    rng = np.random.default_rng(rng_seed)
    Z = rng.standard_normal((n, len(beta) - 1))
    X = np.column_stack([np.ones(n), Z])
    X, _, _ = standardize(X, intercept=True)
    probs = link_function(link)(X @ beta)
    y = rng.binomial(1, probs).astype(np.float64)
    return X, y, probs


# ---------------------------------------------------------------------------
# Posterior sampler
# ---------------------------------------------------------------------------

class ChainState:
    """Current position of one chain: beta, gamma, w and (probit) z.

    A state is owned by a single chain and updated in place by the
    sampling steps.
    """
    def __init__(self, beta, gamma, w, z=None):
        self.beta = np.asarray(beta, dtype=np.float64)
        self.gamma = np.asarray(gamma, dtype=np.int8)
        self.w = float(w)
        self.z = z

    @classmethod
    def initial(cls, p, prior):
        return cls(np.zeros(p), np.ones(p, dtype=np.int8),
                   prior.a / (prior.a + prior.b))

    @property
    def effective_beta(self):
        return self.gamma * self.beta


def _truncnorm_positive(mean, rng):
    """Draw N(mean, 1) truncated to (0, inf) by inversion in log space.

    With a = -mean the standardized draw is
    x = -Phi^-1(u * Phi(-a)), computed as -ndtri_exp(log u + log_ndtr(mean))
    so that Phi(-a) may underflow without stalling.  Non-finite results
    fall back to the truncation boundary.
    """
    mean = np.asarray(mean, dtype=np.float64)
    u = 1.0 - rng.random(mean.shape)  # (0, 1]
    lower = -mean
    with np.errstate(over="ignore", invalid="ignore"):
        x = -ndtri_exp(np.log(u) + log_ndtr(mean))
    x = np.where(np.isfinite(x), np.maximum(x, lower), lower)
    return mean + x


def sample_latent(eta, y, rng):
    """Draw probit latent variables z_i ~ N(eta_i, 1) given the class of y_i.

    z_i is truncated to (0, inf) when y_i = 1 and to (-inf, 0) when
    y_i = 0.
    """
    sign = np.where(np.asarray(y) == 1, 1.0, -1.0)
    return sign * _truncnorm_positive(sign * eta, rng)


def probit_beta_conditional(X, z, gamma, prior_mean, prior_precision, XtX=None):
    """Gaussian full conditional of beta given z and gamma (probit model).

    ``beta | z ~ Normal(m, P^-1)`` with
    ``P = V + D_gamma X'X D_gamma`` and ``m = P^-1 (V beta0 + D_gamma X'z)``,
    where V = diag(prior_precision).  Coefficients with gamma_j = 0 drop
    out of the likelihood and are left with their prior.

    Parameters
    ----------
    X : ndarray (N, p)
    z : ndarray (N,)
    gamma : ndarray (p,)
    prior_mean, prior_precision : ndarray (p,)
    XtX : ndarray (p, p), optional
        Precomputed Gram matrix.

    Returns
    -------
    mean : ndarray (p,)
    chol : tuple
        Lower Cholesky factor of P as returned by ``scipy.linalg.cho_factor``.
    """
    gamma = np.asarray(gamma, dtype=np.float64)
    if XtX is None:
        XtX = X.T @ X
    precision = XtX * np.outer(gamma, gamma) + np.diag(prior_precision)
    rhs = prior_precision * prior_mean + gamma * (X.T @ z)
    chol = cho_factor(precision, lower=True)
    return cho_solve(chol, rhs), chol


def _draw_probit_beta(X, XtX, z, gamma, beta0, prec0, rng):
    mean, (L, lower) = probit_beta_conditional(X, z, gamma, beta0, prec0, XtX=XtX)
    eps = rng.standard_normal(len(mean))
    # L' x = eps gives x with covariance (L L')^-1
    return mean + solve_triangular(L, eps, lower=lower, trans="T")


def _update_beta_logit(state, eta, X, y, beta0, prec0, scales, rng):
    """One sweep of coordinate-wise random-walk Metropolis on beta.

    Excluded coefficients are drawn from their Normal prior, which is
    their exact full conditional.
    """
    p = len(state.beta)
    proposed = state.gamma.astype(bool)
    accepted = np.zeros(p, dtype=bool)
    ll_cur = bernoulli_loglik(y, eta, "logit")
    for j in range(p):
        if not proposed[j]:
            state.beta[j] = beta0[j] + rng.standard_normal() / np.sqrt(prec0[j])
            continue
        old = state.beta[j]
        new = old + scales[j] * rng.standard_normal()
        eta_prop = eta + (new - old) * X[:, j]
        ll_prop = bernoulli_loglik(y, eta_prop, "logit")
        log_ratio = (ll_prop - ll_cur
                     - 0.5 * prec0[j] * ((new - beta0[j]) ** 2 - (old - beta0[j]) ** 2))
        if np.log(rng.random()) < log_ratio:
            state.beta[j] = new
            eta = eta_prop
            ll_cur = ll_prop
            accepted[j] = True
    return eta, accepted, proposed


def _update_gamma(state, eta, X, y, link, selectable, rng):
    """Gibbs update of each selectable gamma_j from its Bernoulli conditional."""
    log_prior_odds = np.log(state.w) - np.log1p(-state.w)
    for j in np.flatnonzero(selectable):
        contrib = state.beta[j] * X[:, j]
        if state.gamma[j]:
            eta_in, eta_out = eta, eta - contrib
        else:
            eta_in, eta_out = eta + contrib, eta
        log_odds = (log_prior_odds + bernoulli_loglik(y, eta_in, link)
                    - bernoulli_loglik(y, eta_out, link))
        if rng.random() < expit(log_odds):
            state.gamma[j] = 1
            eta = eta_in
        else:
            state.gamma[j] = 0
            eta = eta_out
    return eta


def _update_w(gamma, selectable, a, b, rng):
    """Conjugate Beta draw for the shared inclusion probability."""
    n_in = int(gamma[selectable].sum())
    p_sel = int(selectable.sum())
    return float(rng.beta(a + n_in, b + p_sel - n_in))


def _run_chain(chain_args):
    """Run a single chain (module-level for pickling)."""
    (chain_idx, num_chains, X, y, link, prior, num_warmup, num_samples,
     thin, seed, max_seconds, progress_bar) = chain_args

    rng = np.random.default_rng(seed)
    N, p = X.shape
    beta0, sigma0, selectable = prior.resolve(p)
    prec0 = 1.0 / np.square(sigma0)
    state = ChainState.initial(p, prior)
    XtX = X.T @ X if link == "probit" else None

    # curvature of the logit log-posterior at beta = 0
    log_scales = np.log(2.4 / np.sqrt(0.25 * np.sum(X ** 2, axis=0) + prec0))
    batch_acc = np.zeros(p)
    batch_prop = np.zeros(p)
    n_acc = np.zeros(p)
    n_prop = np.zeros(p)

    n_keep = num_samples // thin
    beta_out = np.empty((n_keep, p))
    gamma_out = np.empty((n_keep, p), dtype=np.int8)
    w_out = np.empty(n_keep)
    lp_out = np.empty(n_keep)
    kept = 0

    total = num_warmup + num_samples
    truncated = False
    t0 = time.time()
    pbar = tqdm(range(total), desc=f"{link} chain {chain_idx + 1}/{num_chains}",
                ncols=100, disable=not progress_bar)
    for it in pbar:
        warm = it < num_warmup
        eta = X @ state.effective_beta
        if link == "logit":
            eta, accepted, proposed = _update_beta_logit(
                state, eta, X, y, beta0, prec0, np.exp(log_scales), rng)
        else:
            state.z = sample_latent(eta, y, rng)
            state.beta = _draw_probit_beta(X, XtX, state.z, state.gamma,
                                           beta0, prec0, rng)
            eta = X @ state.effective_beta
        eta = _update_gamma(state, eta, X, y, link, selectable, rng)
        state.w = _update_w(state.gamma, selectable, prior.a, prior.b, rng)

        if link == "logit":
            if warm:
                batch_acc += accepted
                batch_prop += proposed
                if (it + 1) % ADAPT_INTERVAL == 0:
                    k = (it + 1) // ADAPT_INTERVAL
                    rate = np.divide(batch_acc, batch_prop,
                                     out=np.full(p, TARGET_ACCEPT),
                                     where=batch_prop > 0)
                    log_scales += (rate - TARGET_ACCEPT) * min(1.0, 5.0 / np.sqrt(k))
                    batch_acc[:] = 0
                    batch_prop[:] = 0
            else:
                n_acc += accepted
                n_prop += proposed

        if not warm and (it - num_warmup + 1) % thin == 0:
            beta_out[kept] = state.beta
            gamma_out[kept] = state.gamma
            w_out[kept] = state.w
            lp_out[kept] = (bernoulli_loglik(y, eta, link)
                            + prior.log_density(state.beta, state.gamma, state.w))
            kept += 1
            if kept % max(1, n_keep // 10) == 0:
                pbar.set_postfix_str(f"logp={lp_out[kept - 1]:.1f}")

        if (max_seconds is not None and it + 1 < total
                and time.time() - t0 > max_seconds):
            truncated = True
            break
    pbar.close()

    acceptance = None
    if link == "logit":
        acceptance = np.divide(n_acc, n_prop, out=np.full(p, np.nan),
                               where=n_prop > 0)
    return {
        "chain": chain_idx,
        "beta": beta_out[:kept], "gamma": gamma_out[:kept],
        "w": w_out[:kept], "log_post": lp_out[:kept],
        "acceptance": acceptance, "n_iter": it + 1,
        "truncated": truncated, "elapsed": time.time() - t0,
    }


class SpikeSlabResult:
    """Posterior draws from :func:`fit`.

    Samples are stored with shape ``(num_chains, num_draws, ...)`` per
    site so that ``get_samples(group_by_chain=True)`` works for
    computing r_hat and n_eff.  Sites are ``beta``, ``gamma``, ``w`` and
    ``log_post`` (log-likelihood plus log prior of each retained draw).
    """
    def __init__(self, samples, link, prior, feature_names=None,
                 acceptance_rate=None, truncated=False):
        self._samples = samples
        self.link = link
        self.prior = prior
        p = samples["beta"].shape[-1]
        self.feature_names = (list(feature_names) if feature_names is not None
                              else [f"beta[{j}]" for j in range(p)])
        self.acceptance_rate = acceptance_rate
        self.truncated = truncated

    @property
    def num_chains(self):
        return self._samples["beta"].shape[0]

    @property
    def num_draws(self):
        return self._samples["beta"].shape[1]

    def get_samples(self, group_by_chain=False):
        if group_by_chain:
            return self._samples
        # Flatten chain dimension: (num_chains * num_draws, ...)
        return {k: v.reshape(-1, *v.shape[2:]) for k, v in self._samples.items()}

    def to_inference_data(self):
        """ArviZ InferenceData with effective coefficients, gamma, w and log_post."""
        s = self._samples
        return az.from_dict(
            posterior={"beta": s["gamma"] * s["beta"],
                       "gamma": s["gamma"].astype(np.float64),
                       "w": s["w"], "log_post": s["log_post"]},
            coords={"feature": self.feature_names},
            dims={"beta": ["feature"], "gamma": ["feature"]},
        )


def fit(X, y, link="logit", prior=None, num_warmup=1000, num_samples=4000,
        num_chains=1, thin=1, rng_seed=0, max_workers=None, max_seconds=None,
        feature_names=None, progress_bar=True, print_summary=True):
    """Sample the spike-and-slab GLM posterior.

    The logit model is updated by coordinate-wise random-walk Metropolis
    on beta with proposal scales adapted during warmup; the probit model
    by Gibbs sampling with latent-variable augmentation.  In both the
    inclusion indicators and w are drawn from their full conditionals.

    Parameters
    ----------
    X : array (N, p)
        Standardized design matrix including the intercept column.
    y : array (N,)
        Binary outcome.
    link : {"logit", "probit"}
        Link function.
    prior : SpikeSlabPrior or None
        Prior hyperparameters.  Defaults to ``SpikeSlabPrior()``.
    num_warmup : int
        Burn-in iterations per chain (discarded).
    num_samples : int
        Post-warmup iterations per chain; ``num_samples // thin`` draws
        are retained.
    num_chains : int
        Number of independent chains.
    thin : int
        Keep every *thin*-th post-warmup iteration.
    rng_seed : int
        Seed for ``numpy.random.SeedSequence``; each chain gets its own
        child sequence.
    max_workers : int or None
        Maximum parallel chain processes.  None uses up to one per CPU.
    max_seconds : float or None
        Wall-clock cap per chain.  A chain that hits it stops early and
        keeps the draws made so far.
    feature_names : list of str, optional
        Coefficient labels (length p).
    progress_bar : bool
        Show a tqdm progress bar per chain.
    print_summary : bool
        If True, print the coefficient summary table to stdout.

    Returns
    -------
    SpikeSlabResult
    """
    X, y = validate_inputs(X, y)
    _check_link(link)
    if prior is None:
        prior = SpikeSlabPrior()
    if num_warmup < 0:
        raise ValueError(f"num_warmup must be >= 0, got {num_warmup}")
    if thin < 1:
        raise ValueError(f"thin must be >= 1, got {thin}")
    if num_samples < thin:
        raise ValueError(f"num_samples ({num_samples}) must be >= thin ({thin})")
    if num_chains < 1:
        raise ValueError(f"num_chains must be >= 1, got {num_chains}")
    N, p = X.shape
    if feature_names is not None and len(feature_names) != p:
        raise ValueError(f"feature_names has {len(feature_names)} entries, X has {p} columns")
    prior.resolve(p)
    _check_standardized(X)

    seeds = np.random.SeedSequence(rng_seed).spawn(num_chains)
    chain_args = [(c, num_chains, X, y, link, prior, num_warmup, num_samples,
                   thin, seeds[c], max_seconds, progress_bar)
                  for c in range(num_chains)]

    n_workers = min(num_chains, os.cpu_count() or 1)
    if max_workers is not None:
        n_workers = min(n_workers, max_workers)
    n_workers = max(1, n_workers)

    t0 = time.time()
    print(f"Sampling {link} spike-and-slab model: N={N}, p={p}, "
          f"{num_chains} chain(s) x {num_warmup}+{num_samples} iterations",
          flush=True)
    if n_workers > 1:
        ctx = mp.get_context("spawn")
        with ProcessPoolExecutor(max_workers=n_workers, mp_context=ctx) as pool:
            outs = list(pool.map(_run_chain, chain_args))
    else:
        outs = [_run_chain(a) for a in chain_args]
    outs.sort(key=lambda o: o["chain"])

    truncated = any(o["truncated"] for o in outs)
    n_draws = min(len(o["w"]) for o in outs)
    if truncated:
        print(f"Warning: wall-clock limit of {max_seconds}s reached; keeping "
              f"{n_draws} draws per chain.  Check convergence diagnostics "
              f"before using these samples.", flush=True)
    samples = {
        site: np.stack([o[site][:n_draws] for o in outs])
        for site in ("beta", "gamma", "w", "log_post")
    }
    acceptance = None
    if link == "logit":
        acceptance = np.stack([o["acceptance"] for o in outs])
    result = SpikeSlabResult(samples, link, prior, feature_names=feature_names,
                             acceptance_rate=acceptance, truncated=truncated)

    print(f"Done: {num_chains} x {n_draws} draws retained in "
          f"{time.time() - t0:.1f}s", flush=True)
    if acceptance is not None:
        rates = np.nanmean(acceptance, axis=0)
        print("Metropolis acceptance rates: "
              + ", ".join(f"{name}={r:.2f}" for name, r
                          in zip(result.feature_names, rates)), flush=True)
    if print_summary and n_draws > 0:
        print(coefficient_summary(result).to_string(index=False))
    return result


def glm_model(X=None, y=None, beta0=None, sigma0=None, link="logit"):
    """NumPyro model for a Bayesian GLM with every covariate included."""
    N, p = X.shape
    with npyr.plate("p coefficients", p):
        beta = npyr.sample("beta", dist.Normal(beta0, sigma0))
    eta = jnp.dot(X, beta)
    if link == "probit":
        # log-odds of Phi(eta), stable in both tails
        logits = jax_log_ndtr(eta) - jax_log_ndtr(-eta)
    else:
        logits = eta
    with npyr.plate("N observations", N):
        npyr.sample("y", dist.Bernoulli(logits=logits), obs=y)


def fit_reference(X, y, link="logit", prior=None, num_warmup=500,
                  num_samples=1000, num_chains=1, rng_seed=0,
                  print_summary=False):
    """Fit the full-inclusion GLM (gamma = 1) with NUTS as a cross-check.

    Uses the same Normal coefficient prior as *prior* but no inclusion
    indicators, so its posterior should agree with :func:`fit` whenever
    every covariate is always included.

    Returns
    -------
    MCMC
        Fitted NumPyro sampler; ``get_samples()["beta"]`` has shape
        ``(num_chains * num_samples, p)``.
    """
    X, y = validate_inputs(X, y)
    _check_link(link)
    if prior is None:
        prior = SpikeSlabPrior()
    beta0, sigma0, _ = prior.resolve(X.shape[1])
    mcmc = MCMC(NUTS(glm_model), num_warmup=num_warmup,
                num_samples=num_samples, num_chains=num_chains,
                progress_bar=False)
    mcmc.run(jax.random.PRNGKey(rng_seed), X=jnp.array(X), y=jnp.array(y),
             beta0=jnp.array(beta0), sigma0=jnp.array(sigma0), link=link)
    if print_summary:
        mcmc.print_summary()
    return mcmc


# ---------------------------------------------------------------------------
# Posterior predictive engine
# ---------------------------------------------------------------------------

def _draw_probs(beta, gamma, X_new, link):
    """Per-draw success probabilities, shape (S, N_new)."""
    beta = np.asarray(beta, dtype=np.float64)
    gamma = np.asarray(gamma, dtype=np.float64)
    if beta.ndim == 1:
        beta = beta[None, :]
    if gamma.ndim == 1:
        gamma = gamma[None, :]
    if beta.shape[0] == 0:
        raise ValueError("Posterior draw set is empty; cannot form predictions")
    if beta.shape != gamma.shape:
        raise ValueError(f"beta draws {beta.shape} and gamma draws {gamma.shape} differ")
    X_new = np.asarray(X_new, dtype=np.float64)
    if X_new.ndim == 1:
        X_new = X_new[None, :]
    if X_new.shape[1] != beta.shape[1]:
        raise ValueError(
            f"X_new has {X_new.shape[1]} columns, draws have {beta.shape[1]}")
    return link_function(link)((gamma * beta) @ X_new.T)


def bma_predict(beta, gamma, X_new, link="logit"):
    """Bayesian Model Averaging predictive probabilities.

    Averages link(sum_j gamma_j beta_j x_j) over draws, which
    marginalizes over the inclusion configurations visited by the chain.

    Parameters
    ----------
    beta, gamma : array (S, p) or (p,)
        Posterior draws; a 1-D array is treated as a single draw.
    X_new : array (N_new, p)
        Design matrix for new data.
    link : {"logit", "probit"}

    Returns
    -------
    ndarray (N_new,)
    """
    return _draw_probs(beta, gamma, X_new, link).mean(axis=0)


def predict(result, X_new):
    """Per-draw predictive probabilities, shape (S, N_new)."""
    samples = result.get_samples()
    return _draw_probs(samples["beta"], samples["gamma"], X_new, result.link)


def predict_proba(result, X_new):
    """BMA predictive probabilities for new observations, shape (N_new,)."""
    return predict(result, X_new).mean(axis=0)


def classify(probs, threshold=0.5):
    """Binary decisions: 1 where probs > threshold."""
    return (np.asarray(probs) > threshold).astype(int)


_THRESHOLD_METRICS = {
    "accuracy": metrics.accuracy_score,
    "balanced_accuracy": metrics.balanced_accuracy_score,
    "f1": lambda y, pred: metrics.f1_score(y, pred, zero_division=0),
    "mcc": metrics.matthews_corrcoef,
}


def tune_threshold(y, probs, grid=None, metric="accuracy"):
    """Choose the decision threshold maximizing *metric* over a grid.

    This is post-hoc calibration, not part of the Bayesian model.  Scores
    measured on the same split used here are optimistic.

    Parameters
    ----------
    y : array-like (N,)
        Binary outcome.
    probs : array-like (N,)
        Predicted probabilities.
    grid : array-like or None
        Candidate thresholds.  Defaults to 0.01, 0.02, ..., 0.99.
    metric : {"accuracy", "balanced_accuracy", "f1", "mcc"}

    Returns
    -------
    dict
        Keys ``threshold``, ``score``, ``metric`` and ``scores`` (a
        DataFrame over the grid).  Ties go to the lowest threshold.
    """
    if metric not in _THRESHOLD_METRICS:
        raise ValueError(f"Unknown metric {metric!r}; choose from "
                         f"{sorted(_THRESHOLD_METRICS)}")
    scorer = _THRESHOLD_METRICS[metric]
    grid = THRESHOLD_GRID if grid is None else np.asarray(grid, dtype=np.float64)
    y = np.asarray(y).astype(int)
    probs = np.asarray(probs, dtype=np.float64)
    scores = np.array([scorer(y, classify(probs, t)) for t in grid])
    best = int(np.argmax(scores))
    return {"threshold": float(grid[best]), "score": float(scores[best]),
            "metric": metric,
            "scores": pd.DataFrame({"threshold": grid, metric: scores})}


def _check_both_classes(y):
    y = np.asarray(y).astype(bool)
    if y.all() or not y.any():
        raise ValueError("Both classes must be present in y")
    return y


def roc_curve(y, probs, n_thresholds=101):
    """ROC curve from a threshold sweep over [0, 1].

    Returns
    -------
    DataFrame
        Columns ``threshold``, ``fpr``, ``tpr``.
    """
    y = _check_both_classes(y)
    probs = np.asarray(probs, dtype=np.float64)
    thresholds = np.linspace(0.0, 1.0, n_thresholds)
    pred = probs[None, :] > thresholds[:, None]
    tpr = (pred & y).sum(axis=1) / y.sum()
    fpr = (pred & ~y).sum(axis=1) / (~y).sum()
    return pd.DataFrame({"threshold": thresholds, "fpr": fpr, "tpr": tpr})


def cstatistic(y, probs):
    """Concordance statistic (area under the ROC curve).

    Computed as the proportion of concordant pairs among all
    case-control pairs: P(prob_case > prob_control).
    Ties contribute 0.5.
    """
    y = _check_both_classes(y)
    probs = np.asarray(probs, dtype=np.float64)
    cases = probs[y]
    controls = probs[~y]
    # (n_cases, n_controls) pairwise comparisons
    diff = cases[:, None] - controls[None, :]
    concordant = np.sum(diff > 0) + 0.5 * np.sum(diff == 0)
    return float(concordant / (len(cases) * len(controls)))


def log_score(y, probs):
    """Logarithmic (log-likelihood) scoring rule.

    Returns
    -------
    float
        Sum of log-likelihoods: sum[y*log(p) + (1-y)*log(1-p)].
    """
    eps = 1e-15
    probs = np.clip(np.asarray(probs, dtype=np.float64), eps, 1.0 - eps)
    y = np.asarray(y)
    return float(np.sum(y * np.log(probs) + (1.0 - y) * np.log(1.0 - probs)))


def brier_score(y, probs):
    """Mean squared error of predicted probabilities."""
    return float(metrics.brier_score_loss(np.asarray(y).astype(int), probs))


def classification_report(y, probs, threshold=0.5):
    """Standard binary metrics at a threshold plus probability scores."""
    y = np.asarray(y).astype(int)
    probs = np.asarray(probs, dtype=np.float64)
    preds = classify(probs, threshold)
    precision, recall, f1, _ = metrics.precision_recall_fscore_support(
        y, preds, average="binary", zero_division=0)
    try:
        c_stat = cstatistic(y, probs)
    except ValueError:
        c_stat = float("nan")
    return {
        "threshold": float(threshold),
        "accuracy": metrics.accuracy_score(y, preds),
        "precision": precision, "recall": recall, "f1": f1,
        "c_stat": c_stat,
        "log_score": log_score(y, probs),
        "brier": brier_score(y, probs),
        "confusion_matrix": metrics.confusion_matrix(y, preds, labels=[0, 1]),
    }


def calibration_table(y, probs, n_bins=10):
    """Mean predicted probability vs observed event rate in equal-width bins."""
    y = np.asarray(y, dtype=np.float64)
    probs = np.asarray(probs, dtype=np.float64)
    edges = np.linspace(0.0, 1.0, n_bins + 1)
    bins = pd.cut(probs, edges, include_lowest=True)
    df = pd.DataFrame({"bin": bins, "y": y, "p": probs})
    table = df.groupby("bin", observed=True).agg(
        n=("y", "size"), mean_predicted=("p", "mean"), observed_rate=("y", "mean"))
    return table.reset_index()


def evaluate_holdout(result, X_test, y_test, X_valid=None, y_valid=None,
                     metric="accuracy"):
    """Score a fitted model on held-out data with a tuned threshold.

    The threshold is tuned on the validation split when one is given;
    otherwise on the test split itself, which is flagged in the output.

    Returns
    -------
    dict
        :func:`classification_report` keys plus ``threshold_metric``,
        ``threshold_tuned_on_test``, ``probs``, ``roc`` and
        ``calibration``.
    """
    _, y_test = validate_inputs(X_test, y_test)
    if np.unique(y_test).size < 2:
        raise ValueError("y_test must contain both classes to score a held-out "
                         "split (ROC curve and c-statistic are undefined)")
    probs = predict_proba(result, X_test)
    if X_valid is not None:
        _, y_valid = validate_inputs(X_valid, y_valid)
        tuned = tune_threshold(y_valid, predict_proba(result, X_valid), metric=metric)
        on_test = False
    else:
        tuned = tune_threshold(y_test, probs, metric=metric)
        on_test = True
        print(f"Note: threshold tuned on the same split it is scored on "
              f"(no validation split); {metric} is optimistic.", flush=True)
    report = classification_report(y_test, probs, tuned["threshold"])
    report.update({
        "threshold_metric": metric,
        "threshold_tuned_on_test": on_test,
        "probs": probs,
        "roc": roc_curve(y_test, probs),
        "calibration": calibration_table(y_test, probs),
    })
    return report


# ---------------------------------------------------------------------------
# Posterior summaries and convergence diagnostics
# ---------------------------------------------------------------------------

def _chain_diagnostics(x_chain):
    """n_eff and split r_hat of one parameter, x_chain shape (chains, draws)."""
    if x_chain.shape[1] < 4:
        return float("nan"), float("nan")
    with np.errstate(invalid="ignore", divide="ignore"):
        n_eff = float(effective_sample_size(np.asarray(x_chain, dtype=np.float64)))
        r_hat = float(split_gelman_rubin(np.asarray(x_chain, dtype=np.float64)))
    return n_eff, r_hat


def coefficient_summary(result, feature_names=None):
    """Per-coefficient posterior summary.

    Statistics refer to the effective coefficient gamma_j * beta_j, so
    draws in which a covariate is excluded count as exactly zero.

    Returns
    -------
    DataFrame
        Columns ``parameter``, ``mean``, ``sd``, ``q2.5``, ``q97.5``,
        ``inclusion_prob``, ``mean_if_included``, ``n_eff``, ``r_hat``.
    """
    if result.num_draws == 0:
        raise ValueError("Result holds no posterior draws")
    names = feature_names if feature_names is not None else result.feature_names
    chain_samples = result.get_samples(group_by_chain=True)
    gamma_ch = chain_samples["gamma"].astype(np.float64)
    eff_ch = gamma_ch * chain_samples["beta"]
    p = eff_ch.shape[-1]
    eff = eff_ch.reshape(-1, p)
    gamma = gamma_ch.reshape(-1, p)

    rows = []
    for j in range(p):
        n_in = gamma[:, j].sum()
        n_eff, r_hat = _chain_diagnostics(eff_ch[..., j])
        rows.append({
            "parameter": names[j],
            "mean": float(eff[:, j].mean()),
            "sd": float(eff[:, j].std(ddof=1)) if len(eff) > 1 else float("nan"),
            "q2.5": float(np.percentile(eff[:, j], 2.5)),
            "q97.5": float(np.percentile(eff[:, j], 97.5)),
            "inclusion_prob": float(gamma[:, j].mean()),
            "mean_if_included": (float(eff[:, j].sum() / n_in) if n_in > 0
                                 else float("nan")),
            "n_eff": n_eff,
            "r_hat": r_hat,
        })
    return pd.DataFrame(rows)


def summary_report(result, filepath, feature_names=None):
    """Posterior summary table saved to CSV.

    Parameters
    ----------
    result : SpikeSlabResult
        Fitted result.
    filepath : str
        Path for the output CSV.
    feature_names : list of str, optional
        Display names overriding ``result.feature_names``.
    """
    df = coefficient_summary(result, feature_names=feature_names)
    w = result.get_samples()["w"]
    print(f"Inclusion probability w: mean={w.mean():.3f}  "
          f"95% CI=[{np.percentile(w, 2.5):.3f}, {np.percentile(w, 97.5):.3f}]")
    df.to_csv(filepath, index=False, float_format="%.4f")
    try:
        from IPython.display import display
        display(df)
    except ImportError:
        print(df.to_string(index=False))
    print(f"Summary saved to {filepath}")
    return df


def autocorrelation(draws, lags=(1, 5, 10, 50)):
    """Autocorrelation of a single chain at the requested lags.

    Lags at or beyond the chain length are reported as nan.
    """
    x = np.asarray(draws, dtype=np.float64).ravel()
    with np.errstate(invalid="ignore", divide="ignore"):
        acf = np.asarray(_np_autocorrelation(x))
    return pd.Series([float(acf[k]) if k < len(x) else float("nan") for k in lags],
                     index=list(lags), name="acf")


def geweke(draws, first=0.1, last=0.5):
    """Geweke z-score comparing early and late sub-means of one chain.

    The variance of each segment mean is estimated as var / n_eff, which
    accounts for autocorrelation within the segment.

    Parameters
    ----------
    draws : array-like (S,)
        A single chain.
    first, last : float
        Fractions of the chain forming the early and late segments.

    Returns
    -------
    float
        Approximately standard normal under stationarity.
    """
    if not (0 < first < 1 and 0 < last < 1 and first + last <= 1):
        raise ValueError(f"Invalid segment fractions first={first}, last={last}")
    x = np.asarray(draws, dtype=np.float64).ravel()
    n = len(x)
    early = x[:int(first * n)]
    late = x[n - int(last * n):]
    if len(early) < 4 or len(late) < 4:
        raise ValueError(f"Chain of length {n} is too short for a Geweke test")

    def _var_of_mean(seg):
        v = seg.var(ddof=1)
        if v == 0:
            return 0.0
        with np.errstate(invalid="ignore", divide="ignore"):
            n_eff = float(effective_sample_size(seg[None, :]))
        if not np.isfinite(n_eff) or n_eff <= 0:
            n_eff = 1.0
        return v / n_eff

    diff = early.mean() - late.mean()
    se = np.sqrt(_var_of_mean(early) + _var_of_mean(late))
    if se == 0:
        return 0.0 if diff == 0 else float(np.sign(diff) * np.inf)
    return float(diff / se)


def convergence_diagnostics(result, lags=(1, 5, 10, 50), first=0.1, last=0.5,
                            r_hat_max=1.05, geweke_max=2.0, n_eff_min=100):
    """Diagnostics per effective coefficient, for w and for log_post.

    Prints a warning line for each parameter outside the given limits;
    whether to extend warmup or discard the run is left to the caller.

    Returns
    -------
    DataFrame
        Columns ``parameter``, ``n_eff``, ``r_hat``, ``geweke_z`` (the
        largest-magnitude z across chains) and ``acf_lag{k}`` from
        chain 0.
    """
    if result.num_draws == 0:
        raise ValueError("Result holds no posterior draws")
    chain_samples = result.get_samples(group_by_chain=True)
    eff_ch = chain_samples["gamma"] * chain_samples["beta"]
    series = {name: eff_ch[..., j] for j, name in enumerate(result.feature_names)}
    series["w"] = chain_samples["w"]
    series["log_post"] = chain_samples["log_post"]

    rows = []
    for name, x_chain in series.items():
        n_eff, r_hat = _chain_diagnostics(x_chain)
        try:
            zs = [geweke(x_chain[c], first=first, last=last)
                  for c in range(x_chain.shape[0])]
            z = zs[int(np.argmax(np.abs(zs)))]
        except ValueError:
            z = float("nan")
        row = {"parameter": name, "n_eff": n_eff, "r_hat": r_hat, "geweke_z": z}
        acf = autocorrelation(x_chain[0], lags=lags)
        for k in lags:
            row[f"acf_lag{k}"] = acf[k]
        rows.append(row)
    df = pd.DataFrame(rows)

    for row in df.itertuples(index=False):
        problems = []
        if row.r_hat > r_hat_max:
            problems.append(f"r_hat={row.r_hat:.3f}")
        if abs(row.geweke_z) > geweke_max:
            problems.append(f"Geweke z={row.geweke_z:.2f}")
        if row.n_eff < n_eff_min:
            problems.append(f"n_eff={row.n_eff:.0f}")
        if problems:
            print(f"Warning: {row.parameter}: " + ", ".join(problems))
    if result.truncated:
        print("Warning: sampling stopped early at the wall-clock limit")
    return df


# ---------------------------------------------------------------------------
# Cross-validation
# ---------------------------------------------------------------------------

def _cv_fold_worker(fold_args):
    """Run fit + predict for a single CV fold (module-level for pickling)."""
    (k, K, train_idx, test_idx, X, y, link, prior,
     num_warmup, num_samples, num_chains, thin, rng_seed) = fold_args

    print(f"\n--- Fold {k+1}/{K}: train={len(train_idx)}, test={len(test_idx)} ---")
    result_k = fit(
        X[train_idx], y[train_idx], link=link, prior=prior,
        num_warmup=num_warmup, num_samples=num_samples,
        num_chains=num_chains, thin=thin, rng_seed=rng_seed + k,
        max_workers=1, progress_bar=False, print_summary=False,
    )
    return k, y[test_idx], predict_proba(result_k, X[test_idx])


def crossvalidate(X, y, K=5, link="logit", prior=None, num_warmup=1000,
                  num_samples=4000, num_chains=1, thin=1, rng_seed=0,
                  threshold_metric="accuracy", max_workers=None):
    """K-fold cross-validation with automatic parallelisation.

    Fits the model on K-1 folds and predicts the held-out fold, then
    pools the out-of-fold BMA probabilities.

    Parameters
    ----------
    X, y : array-like
        Design matrix and outcome (see :func:`fit`).
    K : int
        Number of folds.
    link, prior : see :func:`fit`.
    num_warmup, num_samples, num_chains, thin : int
        Sampler settings.
    rng_seed : int
        Random seed (incremented per fold).
    threshold_metric : str
        Metric for :func:`tune_threshold` on the pooled predictions.
    max_workers : int or None
        Maximum parallel fold workers.  None uses all available CPUs.

    Returns
    -------
    dict
        Keys: ``y``, ``probs``, ``c_stat``, ``log_score``, ``brier``,
        ``threshold``, ``accuracy``, ``roc``.
    """
    X, y = validate_inputs(X, y)
    N = X.shape[0]
    indices = np.arange(N)
    rng = np.random.RandomState(rng_seed)
    rng.shuffle(indices)
    folds = np.array_split(indices, K)

    n_workers = min(K, os.cpu_count() or 1)
    if max_workers is not None:
        n_workers = min(n_workers, max_workers)
    n_workers = max(1, n_workers)

    fold_args = []
    for k in range(K):
        test_idx = folds[k]
        train_idx = np.concatenate([folds[j] for j in range(K) if j != k])
        fold_args.append((k, K, train_idx, test_idx, X, y, link, prior,
                          num_warmup, num_samples, num_chains, thin, rng_seed))

    if n_workers > 1:
        print(f"Running {K}-fold CV with {n_workers} parallel workers")
        ctx = mp.get_context("spawn")
        with ProcessPoolExecutor(max_workers=n_workers, mp_context=ctx) as pool:
            results = list(pool.map(_cv_fold_worker, fold_args))
    else:
        print(f"Running {K}-fold CV sequentially")
        results = [_cv_fold_worker(a) for a in fold_args]

    results.sort(key=lambda x: x[0])
    all_y = np.concatenate([r[1] for r in results])
    all_probs = np.concatenate([r[2] for r in results])

    c_stat = cstatistic(all_y, all_probs)
    lscore = log_score(all_y, all_probs)
    brier = brier_score(all_y, all_probs)
    tuned = tune_threshold(all_y, all_probs, metric=threshold_metric)
    accuracy = metrics.accuracy_score(all_y.astype(int),
                                      classify(all_probs, tuned["threshold"]))

    print(f"\n{K}-fold cross-validation (N={N}):")
    print(f"  C-statistic        = {c_stat:.3f}")
    print(f"  Logarithmic score  = {lscore:.3f}")
    print(f"  Brier score        = {brier:.4f}")
    print(f"  Threshold ({threshold_metric}) = {tuned['threshold']:.2f}, "
          f"accuracy = {accuracy:.3f}")
    print("  (threshold tuned on the same pooled predictions it is scored on)")

    return {"y": all_y, "probs": all_probs, "c_stat": c_stat,
            "log_score": lscore, "brier": brier,
            "threshold": tuned["threshold"], "accuracy": accuracy,
            "roc": roc_curve(all_y, all_probs)}


# ---------------------------------------------------------------------------
# Plots
# ---------------------------------------------------------------------------

def _top_coefficients(result, n_show):
    """Indices of the n_show effective coefficients with largest |mean|."""
    samples = result.get_samples()
    eff = samples["gamma"] * samples["beta"]
    order = np.argsort(np.abs(eff.mean(axis=0)))
    return order[-min(n_show, len(order)):][::-1]


def plot_trace(result, filestem, n_show=4):
    """Trace plot of log_post, w and the top effective coefficients.

    Each chain is plotted in a distinct colour.  Saves the figure to
    ``{filestem}_trace.pdf``.

    Returns
    -------
    str
        Path to the saved PDF.
    """
    chain_samples = result.get_samples(group_by_chain=True)
    eff_ch = chain_samples["gamma"] * chain_samples["beta"]
    data = {"log_post": chain_samples["log_post"], "w": chain_samples["w"]}
    for idx in _top_coefficients(result, n_show):
        data[result.feature_names[idx]] = eff_ch[..., idx]

    idata = az.from_dict(posterior=data)
    n_vars = len(data)
    axes = az.plot_trace(idata, figsize=(10, 1.5 * n_vars))
    fig = axes.ravel()[0].get_figure()
    fig.tight_layout()
    outpath = filestem + "_trace.pdf"
    fig.savefig(outpath)
    plt.show()
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath


def plot_autocorr(result, filestem, n_show=4):
    """Autocorrelation plot for log_post, w and the top effective coefficients.

    Uses chain 0 only.  Saves the figure to ``{filestem}_autocorr.pdf``.
    """
    chain_samples = result.get_samples(group_by_chain=True)
    eff_ch = chain_samples["gamma"] * chain_samples["beta"]
    # keep shape (1, num_draws) for arviz
    data = {"log_post": chain_samples["log_post"][:1],
            "w": chain_samples["w"][:1]}
    for idx in _top_coefficients(result, n_show):
        data[result.feature_names[idx]] = eff_ch[:1, :, idx]

    idata = az.from_dict(posterior=data)
    n_vars = len(data)
    axes = az.plot_autocorr(idata, figsize=(10, 1.5 * n_vars))
    fig = np.ravel(axes)[0].get_figure()
    fig.tight_layout()
    outpath = filestem + "_autocorr.pdf"
    fig.savefig(outpath)
    plt.show()
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath


def plot_forest(result, filestem, n_show=20):
    """Forest plot of effective coefficients with 95% credible intervals.

    Returns
    -------
    str
        Path to the saved plot.
    """
    summary = coefficient_summary(result)
    order = np.argsort(np.abs(summary["mean"].values))
    order = order[-min(n_show, len(order)):]
    summary = summary.iloc[order]
    n = len(summary)
    beta_mean = summary["mean"].values
    beta_lo = summary["q2.5"].values
    beta_hi = summary["q97.5"].values

    fig, ax = plt.subplots(figsize=(5, max(2, 0.25 * n)))
    y_pos = np.arange(n)
    ax.axvline(0, color="grey", linewidth=0.8, linestyle="--")
    ax.errorbar(beta_mean, y_pos,
                xerr=[beta_mean - beta_lo, beta_hi - beta_mean],
                fmt="o", color="steelblue", ecolor="steelblue",
                elinewidth=1.5, capsize=2, markersize=3)
    ax.set_yticks(y_pos)
    ax.set_yticklabels(summary["parameter"], fontsize=8)
    ax.set_ylim(-0.5, n - 0.5)
    ax.set_xlabel("Coefficient (linear predictor scale)")
    ax.set_title("Posterior mean of gamma*beta, 95% CI", fontsize=9)
    fig.tight_layout()
    outpath = filestem + "_forest.pdf"
    fig.savefig(outpath)
    plt.show()
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath


def plot_inclusion(result, filestem):
    """Bar chart of posterior inclusion probabilities."""
    summary = coefficient_summary(result)
    n = len(summary)
    fig, ax = plt.subplots(figsize=(5, max(2, 0.25 * n)))
    y_pos = np.arange(n)
    ax.barh(y_pos, summary["inclusion_prob"], color="steelblue")
    ax.axvline(0.5, color="grey", linewidth=0.8, linestyle="--")
    ax.set_yticks(y_pos)
    ax.set_yticklabels(summary["parameter"], fontsize=8)
    ax.set_xlim(0, 1)
    ax.set_xlabel("Posterior inclusion probability")
    fig.tight_layout()
    outpath = filestem + "_inclusion.pdf"
    fig.savefig(outpath)
    plt.show()
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath


def plot_roc(roc, filestem, c_stat=None):
    """Plot a ROC curve from :func:`roc_curve` output.

    Saves the figure to ``{filestem}_roc.pdf``.
    """
    fig, ax = plt.subplots(figsize=(4, 4))
    label = "posterior predictive" if c_stat is None else f"C = {c_stat:.3f}"
    ax.plot(roc["fpr"], roc["tpr"], "b-", label=label)
    ax.plot([0, 1], [0, 1], color="grey", linewidth=0.8, linestyle="--")
    ax.set_xlabel("False positive rate")
    ax.set_ylabel("True positive rate")
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.legend(fontsize=8, loc="lower right")
    fig.tight_layout()
    outpath = filestem + "_roc.pdf"
    fig.savefig(outpath)
    plt.show()
    plt.close(fig)
    return outpath


# ---------------------------------------------------------------------------
# High-level entry point
# ---------------------------------------------------------------------------

def run_analysis(df, y_col, feature_cols, filestem, link="logit",
                 sigma0=1.0, a=1.0, b=1.0, test_size=0.25,
                 validation_size=None, crossvalidate_=False, K=5,
                 num_warmup=1000, num_samples=4000, num_chains=2, thin=1,
                 rng_seed=0, threshold_metric="accuracy", max_workers=None):
    """High-level entry point: fit the spike-and-slab GLM from a DataFrame.

    Drops incomplete rows, splits off a stratified test set (and
    optionally a validation set), standardizes covariates on the
    training split, prepends an always-included intercept, fits the
    model and writes summaries, diagnostics and plots.

    Parameters
    ----------
    df : DataFrame
        Data containing outcome and covariates.
    y_col : str
        Name of the binary outcome column.
    feature_cols : list of str
        Covariate columns, all subject to variable selection.
    filestem : str
        Prefix for all output files (CSV summaries and PDF plots).
    link : {"logit", "probit"}
        Link function.
    sigma0 : float
        Prior standard deviation of every coefficient.
    a, b : float
        Beta hyperprior on the inclusion probability.
    test_size : float
        Fraction of rows held out for testing.
    validation_size : float or None
        If given, fraction of the training rows held out to tune the
        decision threshold.  Otherwise the threshold is tuned on the
        test split and flagged as such.
    crossvalidate_ : bool
        If True, run only K-fold cross-validation on all rows.
    K : int
        Number of folds for cross-validation.
    num_warmup, num_samples, num_chains, thin : int
        Sampler settings (see :func:`fit`).
    rng_seed : int
        Random seed for splitting and sampling.
    threshold_metric : str
        Metric for :func:`tune_threshold`.
    max_workers : int or None
        Maximum parallel workers for chains or CV folds.

    Returns
    -------
    dict
        When ``crossvalidate_=False`` (default): ``result``, ``N``,
        ``n_controls``, ``n_cases``, ``feature_cols``, ``summary``,
        ``diagnostics``, ``holdout``, ``scaling``.
        When ``crossvalidate_=True``: ``N``, ``n_controls``,
        ``n_cases``, ``feature_cols``, ``cv``.
    """
    # --- 1. Extract arrays ---
    used_cols = [y_col] + list(feature_cols)
    N_before = len(df)
    df = df[used_cols].dropna()
    N_after = len(df)
    if N_after < N_before:
        print(f"Dropped {N_before - N_after} rows with missing values "
              f"({N_before} -> {N_after})")
    X_raw, y = validate_inputs(df[list(feature_cols)].values, df[y_col].values)
    N, J = X_raw.shape
    n_cases = int(y.sum())
    n_controls = N - n_cases
    names = ["Intercept"] + list(feature_cols)
    prior = SpikeSlabPrior(beta0=0.0, sigma0=sigma0, a=a, b=b, always_include=[0])
    print(f"N={N} ({n_cases} cases, {n_controls} controls), J={J} covariates")

    def _design(rows, mean, scale):
        return np.column_stack([np.ones(len(rows)), (X_raw[rows] - mean) / scale])

    if crossvalidate_:
        _, mean, scale = standardize(X_raw, intercept=False)
        X_all = _design(np.arange(N), mean, scale)
        cv_result = crossvalidate(
            X_all, y, K=K, link=link, prior=prior,
            num_warmup=num_warmup, num_samples=num_samples,
            num_chains=num_chains, thin=thin, rng_seed=rng_seed,
            threshold_metric=threshold_metric, max_workers=max_workers,
        )
        plot_roc(cv_result["roc"], filestem + "_cv", c_stat=cv_result["c_stat"])
        return {"N": N, "n_controls": n_controls, "n_cases": n_cases,
                "feature_cols": names, "cv": cv_result}

    # --- 2. Split and standardize on the training rows ---
    idx = np.arange(N)
    train_idx, test_idx = train_test_split(
        idx, test_size=test_size, stratify=y, random_state=rng_seed)
    valid_idx = None
    if validation_size is not None:
        train_idx, valid_idx = train_test_split(
            train_idx, test_size=validation_size, stratify=y[train_idx],
            random_state=rng_seed)
    _, mean, scale = standardize(X_raw[train_idx], intercept=False)
    print("Covariates standardized to zero mean, unit variance on the training split")
    X_train = _design(train_idx, mean, scale)
    X_test = _design(test_idx, mean, scale)
    X_valid = _design(valid_idx, mean, scale) if valid_idx is not None else None
    print(f"train={len(train_idx)}, test={len(test_idx)}"
          + (f", validation={len(valid_idx)}" if valid_idx is not None else ""))

    # --- 3. Fit ---
    try:
        result = fit(
            X_train, y[train_idx], link=link, prior=prior,
            num_warmup=num_warmup, num_samples=num_samples,
            num_chains=num_chains, thin=thin, rng_seed=rng_seed,
            max_workers=max_workers, feature_names=names, print_summary=False,
        )
    except (RuntimeError, np.linalg.LinAlgError) as e:
        print(f"\nrun_analysis: sampling failed: {e}")
        print("Exiting without producing plots or summaries.")
        return {"error": str(e), "N": N, "n_controls": n_controls,
                "n_cases": n_cases, "feature_cols": names}

    # --- 4. Posterior summaries and diagnostics ---
    summary = summary_report(result, filestem + "_summary.csv")
    diagnostics = convergence_diagnostics(result)
    diagnostics.to_csv(filestem + "_diagnostics.csv", index=False,
                       float_format="%.4f")
    plot_forest(result, filestem)
    plot_inclusion(result, filestem)
    plot_trace(result, filestem)
    plot_autocorr(result, filestem)

    # --- 5. Held-out evaluation ---
    holdout = evaluate_holdout(
        result, X_test, y[test_idx],
        X_valid=X_valid, y_valid=None if valid_idx is None else y[valid_idx],
        metric=threshold_metric,
    )
    print(f"\nHeld-out (N={len(test_idx)}):")
    print(f"  C-statistic        = {holdout['c_stat']:.3f}")
    print(f"  Logarithmic score  = {holdout['log_score']:.3f}")
    print(f"  Brier score        = {holdout['brier']:.4f}")
    print(f"  Threshold          = {holdout['threshold']:.2f} "
          f"({'test' if holdout['threshold_tuned_on_test'] else 'validation'} split)")
    print(f"  Accuracy           = {holdout['accuracy']:.3f}")
    plot_roc(holdout["roc"], filestem, c_stat=holdout["c_stat"])

    return {
        "result": result,
        "N": N, "n_controls": n_controls, "n_cases": n_cases,
        "feature_cols": names,
        "summary": summary, "diagnostics": diagnostics,
        "holdout": holdout,
        "scaling": {"mean": mean, "scale": scale},
    }
