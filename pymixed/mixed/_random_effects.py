"""
Random-effects blocks and the relative covariance factor λ.

This module handles:
1. Parsing user-provided grouping variables and random effect terms
2. Storing each grouping factor's design as a transposed (S × n) matrix
   plus one level reference per observation
3. Holding the lower-triangular relative covariance factor λ and the
   positions of its free parameters
4. Amalgamating blocks that share a grouping factor, the nesting test,
   and variance/correlation summaries derived from λ

The random-effects columns of a block are laid out level-major: level r
occupies columns r*S .. r*S + S - 1, so the b vector of a block is the
(S × nlevs) matrix b[:, r] flattened in column-major order.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), 1-48. Section 2.
"""

from __future__ import annotations

from typing import Sequence
import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from pymixed.core.exceptions import DimensionError, ValidationError


class RandomEffectsBlock:
    """Random-effects design block for one grouping factor.

    Attributes:
        name: Grouping factor name.
        levels: Ordered level labels.
        refs: Level index of each observation (n,), values in [0, nlevs).
        z: Transposed design (S, n), row k is the k-th term's values.
        cnames: Term names (S,).
        lam: Lower-triangular relative covariance factor (S, S).
        inds: Column-major linear indices (col * S + row) of the free
            entries of ``lam``.
        scratch: Reusable (S, nlevs) work buffer.
        adj_a: Weighted adjoint Z' as a CSC matrix (S * nlevs, n).
    """

    def __init__(
        self,
        name: str,
        levels: Sequence,
        refs: NDArray,
        z: NDArray,
        cnames: Sequence[str] | None = None,
        inds: NDArray | None = None,
    ):
        z = np.atleast_2d(np.asarray(z, dtype=np.float64))
        S, n = z.shape
        refs = np.asarray(refs, dtype=np.intp).ravel()
        if refs.shape[0] != n:
            raise DimensionError(
                f"Random effects '{name}': refs has {refs.shape[0]} "
                f"elements but z has {n} columns"
            )
        levels = list(levels)
        nlev = len(levels)
        if n and (refs.min() < 0 or refs.max() >= nlev):
            raise ValidationError(
                f"Random effects '{name}': refs must lie in [0, {nlev})"
            )
        if cnames is None:
            cnames = ['(Intercept)'] if S == 1 else [f'z{k}' for k in range(S)]
        cnames = list(cnames)
        if len(cnames) != S:
            raise DimensionError(
                f"Random effects '{name}': {len(cnames)} column names "
                f"for block size {S}"
            )

        if inds is None:
            inds = np.array(
                [c * S + r for c in range(S) for r in range(c, S)],
                dtype=np.intp,
            )
        inds = np.sort(np.asarray(inds, dtype=np.intp))
        if np.any(inds % S < inds // S):
            raise ValidationError(
                f"Random effects '{name}': free parameters must lie in "
                f"the lower triangle"
            )

        self.name = name
        self.levels = levels
        self.refs = refs
        self.z = z
        self.cnames = cnames
        self.lam = np.eye(S)
        self.inds = inds
        self.scratch = np.zeros((S, nlev))
        self.adj_a = sparse.csc_matrix(
            (z.T.flatten(),
             (refs[:, np.newaxis] * S + np.arange(S)).ravel(),
             np.arange(0, n * S + 1, S)),
            shape=(S * nlev, n),
        )
        self._wtz = None
        self._is_weighted = False

    # -----------------------------------------------------------------
    # Dimensions
    # -----------------------------------------------------------------

    @property
    def vsize(self) -> int:
        """Block size S: random effects per level."""
        return self.z.shape[0]

    @property
    def nlevs(self) -> int:
        return len(self.levels)

    @property
    def nranef(self) -> int:
        """Total number of random effects, S * nlevs."""
        return self.vsize * self.nlevs

    @property
    def nobs(self) -> int:
        return self.z.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        return (self.nobs, self.nranef)

    @property
    def ntheta(self) -> int:
        return len(self.inds)

    @property
    def wtz(self) -> NDArray:
        """Weighted transposed design; ``z`` itself until reweighted."""
        return self._wtz if self._is_weighted else self.z

    def indmat(self) -> NDArray:
        """Boolean (S, S) mask of the free entries of ``lam``."""
        S = self.vsize
        mask = np.zeros(S * S, dtype=bool)
        mask[self.inds] = True
        return mask.reshape((S, S), order='F')

    # -----------------------------------------------------------------
    # Covariance parameters
    # -----------------------------------------------------------------

    def _theta_positions(self) -> tuple[NDArray, NDArray]:
        S = self.vsize
        return self.inds % S, self.inds // S

    def get_theta(self) -> NDArray:
        """Copy of the free entries of λ in column-major order."""
        rows, cols = self._theta_positions()
        return self.lam[rows, cols].copy()

    def set_theta(self, theta: NDArray) -> 'RandomEffectsBlock':
        """Write θ into the free entries of λ in place.

        Raises:
            DimensionError: If ``theta`` has the wrong length.
        """
        theta = np.asarray(theta, dtype=np.float64).ravel()
        if theta.shape[0] != self.ntheta:
            raise DimensionError(
                f"Random effects '{self.name}': theta has {theta.shape[0]} "
                f"elements, expected {self.ntheta}"
            )
        rows, cols = self._theta_positions()
        self.lam[rows, cols] = theta
        return self

    def lower_bounds(self) -> NDArray:
        """0 for diagonal entries of λ, -inf for off-diagonal ones."""
        rows, cols = self._theta_positions()
        return np.where(rows == cols, 0.0, -np.inf)

    def zerocorr(self) -> 'RandomEffectsBlock':
        """Constrain λ to be diagonal.

        The off-diagonal free parameters are removed and their entries
        zeroed, so the block behaves as S independent scalar terms.
        """
        rows, cols = self._theta_positions()
        offdiag = rows != cols
        self.lam[rows[offdiag], cols[offdiag]] = 0.0
        self.inds = self.inds[~offdiag]
        return self

    # -----------------------------------------------------------------
    # Weights and products
    # -----------------------------------------------------------------

    def reweight(self, sqrtwts: NDArray) -> 'RandomEffectsBlock':
        """Overwrite the weighted design with z * sqrtwts.

        Empty weights are a no-op. The weighted buffer is allocated on
        the first non-empty call; ``adj_a`` is refreshed in place.
        """
        sqrtwts = np.asarray(sqrtwts, dtype=np.float64)
        if sqrtwts.size == 0:
            return self
        if sqrtwts.shape[0] != self.nobs:
            raise DimensionError(
                f"weights have {sqrtwts.shape[0]} elements, "
                f"expected {self.nobs}"
            )
        if not self._is_weighted:
            self._wtz = np.empty_like(self.z)
            self._is_weighted = True
        np.multiply(self.z, sqrtwts[np.newaxis, :], out=self._wtz)
        self.adj_a.data[:] = self._wtz.T.ravel()
        return self

    def add_zb(self, eta: NDArray, b: NDArray) -> NDArray:
        """Add the unweighted product Z @ vec(b) to ``eta`` in place.

        Args:
            eta: Linear predictor (n,), updated in place.
            b: Random effects on the b scale, shape (S, nlevs).
        """
        eta += np.einsum('ki,ki->i', self.z, b[:, self.refs])
        return eta

    def to_dense(self) -> NDArray:
        """Weighted design as a dense (n, S * nlevs) matrix."""
        return self.adj_a.T.toarray()

    # -----------------------------------------------------------------
    # Variance summaries
    # -----------------------------------------------------------------

    def rowlengths(self) -> NDArray:
        """Euclidean norms of the rows of λ."""
        return np.sqrt(np.sum(np.tril(self.lam) ** 2, axis=1))

    def sigmas(self, scale: float = 1.0) -> NDArray:
        """Standard deviations of the random effects, rowlengths * scale."""
        return self.rowlengths() * scale

    def sigma_rhos(self, scale: float = 1.0) -> tuple[NDArray, NDArray]:
        """Standard deviations and within-block correlations.

        Correlations are returned for the strictly lower triangle in
        column-major order. Pairs whose rows of the free-parameter mask
        share no column are structurally uncorrelated and reported as -0.0.

        Returns:
            (sigmas (S,), rhos (S * (S - 1) / 2,))
        """
        S = self.vsize
        lam = np.tril(self.lam)
        mask = self.indmat()
        lengths = self.rowlengths()
        rhos = []
        for c in range(S):
            for r in range(c + 1, S):
                if not np.any(mask[r] & mask[c]):
                    rhos.append(-0.0)
                    continue
                with np.errstate(divide='ignore', invalid='ignore'):
                    rhos.append(float(lam[r] @ lam[c]) / (lengths[r] * lengths[c]))
        return lengths * scale, np.array(rhos, dtype=np.float64)

    def corrmat(self) -> NDArray:
        """Correlation matrix of the random effects, row-normalized λλ'."""
        lam = np.tril(self.lam)
        lengths = self.rowlengths()
        with np.errstate(divide='ignore', invalid='ignore'):
            normalized = lam / lengths[:, np.newaxis]
        return normalized @ normalized.T

    def cond(self) -> float:
        """Condition number of λ; 1 for scalar blocks."""
        if self.vsize == 1:
            return 1.0
        return float(np.linalg.cond(np.tril(self.lam)))

    def __repr__(self) -> str:
        return (
            f"RandomEffectsBlock({self.name!r}, S={self.vsize}, "
            f"nlevs={self.nlevs}, ntheta={self.ntheta})"
        )


def amalgamate(blocks: Sequence[RandomEffectsBlock]) -> list[RandomEffectsBlock]:
    """Merge blocks that share a grouping factor.

    The merged block stacks the constituents' ``z`` rows and combines
    their free-parameter masks block-diagonally, so cross terms between
    the original blocks are fixed at zero. λ is reset to the identity.
    Order of first appearance is preserved.

    Raises:
        ValidationError: If blocks with the same name have different
            levels or level references.
    """
    by_name: dict[str, list[RandomEffectsBlock]] = {}
    for block in blocks:
        by_name.setdefault(block.name, []).append(block)

    merged = []
    for name, group in by_name.items():
        if len(group) == 1:
            merged.append(group[0])
            continue
        first = group[0]
        for other in group[1:]:
            if other.levels != first.levels or not np.array_equal(other.refs, first.refs):
                raise ValidationError(
                    f"Cannot amalgamate random effects '{name}': "
                    f"blocks disagree on the grouping factor"
                )
        S = sum(b.vsize for b in group)
        inds = []
        offset = 0
        for b in group:
            rows = b.inds % b.vsize + offset
            cols = b.inds // b.vsize + offset
            inds.extend(cols * S + rows)
            offset += b.vsize
        new = RandomEffectsBlock(
            name,
            first.levels,
            first.refs,
            np.vstack([b.z for b in group]),
            cnames=[c for b in group for c in b.cnames],
            inds=np.array(inds, dtype=np.intp),
        )
        merged.append(new)
    return merged


def isnested(a: RandomEffectsBlock, b: RandomEffectsBlock) -> bool:
    """Whether the grouping factor of ``a`` is nested in that of ``b``.

    True iff every level of ``a`` occurs with exactly one level of ``b``.
    The level of ``b`` first seen for each level of ``a`` is recorded and
    every observation is checked against it.
    """
    if a.nobs != b.nobs:
        raise DimensionError(
            f"isnested: blocks have {a.nobs} and {b.nobs} observations"
        )
    if a.nobs == 0:
        return True
    _, first = np.unique(a.refs, return_index=True)
    first_b = np.full(a.nlevs, -1, dtype=np.intp)
    first_b[a.refs[first]] = b.refs[first]
    return bool(np.all(b.refs == first_b[a.refs]))


def parse_random_effects(
    groups: dict[str, NDArray],
    random_effects: dict[str, list] | None,
    random_data: dict[str, NDArray] | None,
    n: int,
) -> list[RandomEffectsBlock]:
    """Parse user input into random-effects blocks.

    Args:
        groups: Mapping of grouping factor name → group labels array (n,).
        random_effects: Mapping of group name → list of term names.
            If None, defaults to random intercept ('1') for each group.
            Example: {'subject': ['1', 'time']} for (1 + time | subject).
            A list of lists creates one block per inner list; the blocks
            are amalgamated with zero correlation between them, e.g.
            {'subject': [['1'], ['time']]} for (1 | subject) + (0 + time | subject).
        random_data: Mapping of variable name → data array (n,) for
            random slope variables. Required if any term in random_effects
            is not '1' (intercept).
        n: Number of observations.

    Returns:
        List of RandomEffectsBlock, one per grouping factor.
    """
    if random_effects is None:
        random_effects = {name: ['1'] for name in groups}
    if random_data is None:
        random_data = {}

    blocks = []
    for group_name in groups:
        group_raw = np.asarray(groups[group_name])
        if group_raw.shape[0] != n:
            raise DimensionError(
                f"Group '{group_name}' has {group_raw.shape[0]} elements, "
                f"expected {n}"
            )
        levels, refs = np.unique(group_raw, return_inverse=True)

        terms = random_effects.get(group_name, ['1'])
        if terms and all(isinstance(t, (list, tuple)) for t in terms):
            term_sets = [tuple(t) for t in terms]
        else:
            term_sets = [tuple(terms)]

        for term_set in term_sets:
            z = _build_z(group_name, term_set, random_data, n)
            cnames = ['(Intercept)' if t == '1' else t for t in term_set]
            blocks.append(RandomEffectsBlock(
                group_name, levels.tolist(), refs, z, cnames=cnames
            ))

    return amalgamate(blocks)


def _build_z(
    group_name: str,
    terms: tuple[str, ...],
    random_data: dict[str, NDArray],
    n: int,
) -> NDArray:
    """Build the transposed design (S, n) for one block's terms."""
    if not terms:
        raise ValidationError(f"Group '{group_name}' has no random effect terms")
    z = np.empty((len(terms), n), dtype=np.float64)
    for k, term in enumerate(terms):
        if term == '1':
            z[k] = 1.0
            continue
        if term not in random_data:
            raise ValidationError(
                f"Random slope term '{term}' requires data in "
                f"random_data dict, but '{term}' was not found. "
                f"Available: {list(random_data.keys())}"
            )
        var_data = np.asarray(random_data[term], dtype=np.float64)
        if var_data.shape[0] != n:
            raise DimensionError(
                f"Random data '{term}' has {var_data.shape[0]} elements, "
                f"expected {n}"
            )
        z[k] = var_data
    return z
