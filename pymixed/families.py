"""
Response families, link functions and the GLM response state used by PIRLS.

Each Family defines:
- A variance function V(μ) relating variance to the mean
- A default link function g(μ) mapping the mean to the linear predictor
- Unit deviances d(y_i, μ_i) whose weighted sum is the deviance
- A log-likelihood function for logLik/AIC
- An initialization function for IRLS starting values

Each Link defines:
- g(μ) → η  (link)
- g⁻¹(η) → μ  (inverse link)
- dμ/dη  (derivative of inverse link, for IRLS weights)

GlmResponse bundles a family with a response vector and the per-observation
vectors (μ, deviance residuals, working residuals, working weights) that the
mixed-model engine refreshes from the linear predictor on every PIRLS step.

References:
    McCullagh, P., & Nelder, J. A. (1989). Generalized Linear Models (2nd ed.)
    R Core Team. stats::family, stats::make.link
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import numpy as np
from numpy.typing import NDArray
from scipy import stats
from scipy.special import gammaln

from pymixed.core.exceptions import DimensionError


# =====================================================================
# Link functions
# =====================================================================

class Link(ABC):
    """Abstract link function g(μ) mapping mean to linear predictor."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def link(self, mu: NDArray) -> NDArray:
        """g(μ) → η."""
        ...

    @abstractmethod
    def linkinv(self, eta: NDArray) -> NDArray:
        """g⁻¹(η) → μ."""
        ...

    @abstractmethod
    def mu_eta(self, eta: NDArray) -> NDArray:
        """dμ/dη = (g⁻¹)'(η)."""
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class IdentityLink(Link):
    """Identity link: g(μ) = μ. Default for Gaussian family."""

    @property
    def name(self) -> str:
        return 'identity'

    def link(self, mu: NDArray) -> NDArray:
        return mu.copy()

    def linkinv(self, eta: NDArray) -> NDArray:
        return eta.copy()

    def mu_eta(self, eta: NDArray) -> NDArray:
        return np.ones_like(eta)


class LogitLink(Link):
    """Logit link: g(μ) = log(μ/(1-μ)). Default for Binomial family."""

    @property
    def name(self) -> str:
        return 'logit'

    def link(self, mu: NDArray) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        return np.log(mu / (1 - mu))

    def linkinv(self, eta: NDArray) -> NDArray:
        # Clip to prevent overflow in exp
        eta = np.clip(eta, -500, 500)
        return 1.0 / (1.0 + np.exp(-eta))

    def mu_eta(self, eta: NDArray) -> NDArray:
        eta = np.clip(eta, -500, 500)
        p = 1.0 / (1.0 + np.exp(-eta))
        return np.maximum(p * (1.0 - p), 1e-10)


class ProbitLink(Link):
    """Probit link: g(μ) = Φ⁻¹(μ). Alternative for Binomial family."""

    @property
    def name(self) -> str:
        return 'probit'

    def link(self, mu: NDArray) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        return stats.norm.ppf(mu)

    def linkinv(self, eta: NDArray) -> NDArray:
        return stats.norm.cdf(eta)

    def mu_eta(self, eta: NDArray) -> NDArray:
        return np.maximum(stats.norm.pdf(eta), 1e-10)


class LogLink(Link):
    """Log link: g(μ) = log(μ). Default for Poisson family."""

    @property
    def name(self) -> str:
        return 'log'

    def link(self, mu: NDArray) -> NDArray:
        return np.log(np.maximum(mu, 1e-10))

    def linkinv(self, eta: NDArray) -> NDArray:
        # Clip to prevent overflow
        eta = np.clip(eta, -500, 500)
        return np.exp(eta)

    def mu_eta(self, eta: NDArray) -> NDArray:
        eta = np.clip(eta, -500, 500)
        return np.exp(eta)


_LINK_CLASSES: dict[str, type[Link]] = {
    'identity': IdentityLink,
    'logit': LogitLink,
    'probit': ProbitLink,
    'log': LogLink,
}


def _resolve_link(link: str | Link | None, default: Link) -> Link:
    """Resolve a link argument to a Link instance."""
    if link is None:
        return default
    if isinstance(link, Link):
        return link
    if isinstance(link, str):
        cls = _LINK_CLASSES.get(link.lower())
        if cls is None:
            valid = ', '.join(sorted(_LINK_CLASSES.keys()))
            raise ValueError(f"Unknown link: {link!r}. Valid links: {valid}")
        return cls()
    raise TypeError(f"link must be str or Link, got {type(link).__name__}")


# =====================================================================
# Family base class
# =====================================================================

class Family(ABC):
    """
    GLM family specification.

    Defines the relationship between the mean and variance of the
    response distribution, along with a link function.
    """

    def __init__(self, link: str | Link | None = None):
        self._link = _resolve_link(link, self._default_link())

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def _default_link(self) -> Link:
        ...

    @property
    def link(self) -> Link:
        return self._link

    @abstractmethod
    def variance(self, mu: NDArray) -> NDArray:
        """Variance function V(μ)."""
        ...

    @abstractmethod
    def unit_deviance(self, y: NDArray, mu: NDArray) -> NDArray:
        """Per-observation deviance d(y_i, μ_i), before prior weights."""
        ...

    def deviance(self, y: NDArray, mu: NDArray, wt: NDArray) -> float:
        """Compute total deviance: Σ wt_i * d(y_i, μ_i)."""
        return float(np.sum(wt * self.unit_deviance(y, mu)))

    @abstractmethod
    def initialize(self, y: NDArray) -> NDArray:
        """Initialize μ from y for IRLS starting values.

        Must return values in the valid range for the link function.
        """
        ...

    @property
    def dispersion_is_fixed(self) -> bool:
        """Whether the dispersion parameter is known a priori.

        True for Binomial (φ=1) and Poisson (φ=1).
        False for Gaussian (φ=σ² estimated from data).
        """
        return False

    @abstractmethod
    def log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray, dispersion: float
    ) -> float:
        """Compute the conditional log-likelihood Σ log f(y_i | μ_i)."""
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(link={self._link.name!r})"


# =====================================================================
# Concrete families
# =====================================================================

class Gaussian(Family):
    """Gaussian (Normal) family. Default link: identity.

    V(μ) = 1
    d(y, μ) = (y - μ)²
    """

    @property
    def name(self) -> str:
        return 'gaussian'

    def _default_link(self) -> Link:
        return IdentityLink()

    def variance(self, mu: NDArray) -> NDArray:
        return np.ones_like(mu)

    def initialize(self, y: NDArray) -> NDArray:
        return y.copy()

    def unit_deviance(self, y: NDArray, mu: NDArray) -> NDArray:
        return (y - mu) ** 2

    def log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray, dispersion: float
    ) -> float:
        # Simplifies for wt=1 to: -n/2 * log(2πσ²) - RSS/(2σ²)
        n = float(np.sum(wt > 0))
        rss = float(np.sum(wt * (y - mu) ** 2))
        return -0.5 * (rss / dispersion + n * np.log(2 * np.pi * dispersion))


class Binomial(Family):
    """Binomial family. Default link: logit.

    With unit prior weights the response is Bernoulli (0/1). With prior
    weights the response is a proportion and the weights are trial counts.

    V(μ) = μ(1-μ)
    d(y, μ) = 2 [y log(y/μ) + (1-y) log((1-y)/(1-μ))]
    """

    @property
    def name(self) -> str:
        return 'binomial'

    def _default_link(self) -> Link:
        return LogitLink()

    def variance(self, mu: NDArray) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        return mu * (1.0 - mu)

    def initialize(self, y: NDArray) -> NDArray:
        # R's default: (y + 0.5) / 2 for binary data
        return (y + 0.5) / 2.0

    def unit_deviance(self, y: NDArray, mu: NDArray) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        # 0*log(0) = 0. np.where evaluates both branches, so suppress
        # harmless warnings from the unused branch.
        with np.errstate(divide='ignore', invalid='ignore'):
            term1 = np.where(y > 0, y * np.log(y / mu), 0.0)
            term2 = np.where(y < 1, (1 - y) * np.log((1 - y) / (1 - mu)), 0.0)
        return 2.0 * (term1 + term2)

    def log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray, dispersion: float
    ) -> float:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        return float(np.sum(wt * (y * np.log(mu) + (1 - y) * np.log(1 - mu))))

    @property
    def dispersion_is_fixed(self) -> bool:
        return True


class Poisson(Family):
    """Poisson family. Default link: log.

    V(μ) = μ
    d(y, μ) = 2 [y log(y/μ) - (y - μ)]
    """

    @property
    def name(self) -> str:
        return 'poisson'

    def _default_link(self) -> Link:
        return LogLink()

    def variance(self, mu: NDArray) -> NDArray:
        return np.maximum(mu, 1e-10)

    def initialize(self, y: NDArray) -> NDArray:
        # R: y + 0.1 (to avoid log(0))
        return np.maximum(y, 0.1)

    def unit_deviance(self, y: NDArray, mu: NDArray) -> NDArray:
        mu = np.maximum(mu, 1e-10)
        with np.errstate(divide='ignore', invalid='ignore'):
            term = np.where(y > 0, y * np.log(y / mu), 0.0)
        return 2.0 * (term - (y - mu))

    def log_likelihood(
        self, y: NDArray, mu: NDArray, wt: NDArray, dispersion: float
    ) -> float:
        mu = np.maximum(mu, 1e-10)
        return float(np.sum(wt * (y * np.log(mu) - mu - gammaln(y + 1))))

    @property
    def dispersion_is_fixed(self) -> bool:
        return True


_FAMILY_CLASSES: dict[str, type[Family]] = {
    'gaussian': Gaussian,
    'normal': Gaussian,
    'binomial': Binomial,
    'bernoulli': Binomial,
    'poisson': Poisson,
}


def resolve_family(family: str | Family, link: str | Link | None = None) -> Family:
    """Resolve a family argument to a Family instance.

    Args:
        family: Either a string name ('gaussian', 'binomial', 'poisson')
                or a Family instance (passed through).
        link: Optional link override, used only with a string family.

    Returns:
        Family instance.

    Raises:
        ValueError: If string name is not recognized.
        TypeError: If argument is neither string nor Family.
    """
    if isinstance(family, Family):
        return family
    if isinstance(family, str):
        cls = _FAMILY_CLASSES.get(family.lower())
        if cls is None:
            valid = ', '.join(
                sorted(k for k in _FAMILY_CLASSES.keys()
                       if k not in ('normal', 'bernoulli'))
            )
            raise ValueError(
                f"Unknown family: {family!r}. Valid families: {valid}"
            )
        return cls(link)
    raise TypeError(f"family must be str or Family, got {type(family).__name__}")


# =====================================================================
# Response state
# =====================================================================

class GlmResponse:
    """Mutable per-observation state of a GLM response.

    All vectors are allocated once and overwritten in place by
    ``update_mu`` so that the PIRLS loop does not reallocate.

    Attributes:
        y: Response (n,).
        wts: Prior weights (n,), or empty for unit weights.
        eta: Linear predictor (n,).
        mu: Mean g⁻¹(η) (n,).
        devresid: Weighted unit deviances (n,); their sum is the deviance.
        wrkresid: Working residuals (y - μ) / (dμ/dη) (n,).
        wrkwt: Working weights wt (dμ/dη)² / V(μ) (n,).
    """

    def __init__(
        self,
        y: NDArray,
        family: Family,
        wts: NDArray | None = None,
        offset: NDArray | None = None,
    ):
        self.y = np.asarray(y, dtype=np.float64)
        n = self.y.shape[0]
        self.family = family
        self.wts = np.zeros(0) if wts is None else np.asarray(wts, dtype=np.float64)
        if self.wts.size not in (0, n):
            raise DimensionError(
                f"wts has {self.wts.size} elements, expected {n} or 0"
            )
        self.offset = np.zeros(0) if offset is None else np.asarray(offset, dtype=np.float64)
        if self.offset.size not in (0, n):
            raise DimensionError(
                f"offset has {self.offset.size} elements, expected {n} or 0"
            )
        self.eta = np.zeros(n)
        self.mu = np.zeros(n)
        self.devresid = np.zeros(n)
        self.wrkresid = np.zeros(n)
        self.wrkwt = np.zeros(n)

    @property
    def prior_weights(self) -> NDArray:
        """Prior weights, expanded to ones when unweighted."""
        return self.wts if self.wts.size else np.ones_like(self.y)

    @property
    def dispersion_parameter(self) -> bool:
        """Whether the family has a free dispersion parameter."""
        return not self.family.dispersion_is_fixed

    def update_mu(self, eta: NDArray) -> 'GlmResponse':
        """Install η and refresh μ, deviance residuals and working vectors."""
        link = self.family.link
        np.copyto(self.eta, eta)
        if self.offset.size:
            self.eta += self.offset
        self.mu[:] = link.linkinv(self.eta)
        mu_eta = link.mu_eta(self.eta)
        wt = self.prior_weights
        self.devresid[:] = wt * self.family.unit_deviance(self.y, self.mu)
        self.wrkresid[:] = (self.y - self.mu) / mu_eta
        self.wrkwt[:] = wt * mu_eta ** 2 / self.family.variance(self.mu)
        return self

    def wrkresp(self, out: NDArray) -> NDArray:
        """Overwrite ``out`` with the working response η - offset + working residual."""
        np.add(self.eta, self.wrkresid, out=out)
        if self.offset.size:
            out -= self.offset
        return out

    def deviance(self) -> float:
        return float(np.sum(self.devresid))

    def log_likelihood(self, dispersion: float = 1.0) -> float:
        return self.family.log_likelihood(
            self.y, self.mu, self.prior_weights, dispersion
        )
