#########################################################################################
##
##                  RANK-REVEALING FACTORIZATION & MARGINAL BLOCK ANALYSIS
##                                  (sparse_qr.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import scipy.linalg as sci_linalg
import scipy.sparse as sci_sparse


__all__ = [
    "RankRevealingFactorization",
    "rank_revealing_factor",
    "column_scaling",
    "compute_qr_tolerance",
    "compute_svd_tolerance",
]


# TOLERANCES ============================================================================

def compute_qr_tolerance(jacobian: np.ndarray) -> float:
    """SuiteSparseQR default rank tolerance ``20·(m+n)·eps·max‖col‖₂``."""
    m, n = jacobian.shape
    if m == 0 or n == 0:
        return 0.0
    max_norm = float(np.max(np.linalg.norm(jacobian, axis=0)))
    return 20.0 * (m + n) * np.finfo(float).eps * max_norm


def compute_svd_tolerance(singular_values: np.ndarray, eps_tol_svd: float) -> float:
    """Spectral tolerance ``eps_tol_svd · n · σ_max``."""
    sv = np.asarray(singular_values, dtype=float)
    if sv.size == 0:
        return 0.0
    return float(eps_tol_svd * sv.size * np.max(sv))


def column_scaling(jacobian: np.ndarray, norm_tol: float) -> np.ndarray:
    """Per-column factors that bring every column with norm above *norm_tol*
    to unit norm; (near) zero columns keep a factor of one."""
    norms = np.linalg.norm(jacobian, axis=0)
    scale = np.ones(jacobian.shape[1])
    mask = norms > norm_tol
    scale[mask] = 1.0 / norms[mask]
    return scale


# RESULT ================================================================================

@dataclass
class RankRevealingFactorization:
    """Rank-revealing factorization of ``J = [J_o | J_m]``.

    ``J_o`` holds the columns eliminated by the Schur complement and ``J_m``
    the trailing marginalized block whose statistics are reported.

    Attributes
    ----------
    rank, rank_deficiency : int
        Numerical rank of the marginalized block and ``dimension - rank``.
    marginal_rank, marginal_rank_deficiency : int
        Numerical rank of the eliminated block ``J_o`` and its deficiency.
    tolerance : float
        QR tolerance used on the (normalized) eliminated block.
    svd_tolerance : float
        Tolerance applied to :attr:`singular_values`.
    singular_values : np.ndarray
        Singular values of :attr:`marginal_r_factor`, descending.
    right_singular_vectors : np.ndarray
        ``V``, shape ``(dimension, dimension)``.
    r_factor : np.ndarray
        Triangular factor of the column-pivoted QR of ``J_o``.
    permutation : np.ndarray
        Column pivoting of :attr:`r_factor`.
    marginal_r_factor : np.ndarray
        ``R22``: square root of the Schur complement of the marginalized
        block, in normalized coordinates.
    scaling : np.ndarray
        Column normalization factors of the marginalized block (ones when
        normalization is off).
    sv_log2_sum : float
        ``log2`` pseudo-determinant of :attr:`information_matrix` over the
        numerical rank.

    Notes
    -----
    :attr:`null_space` and :attr:`column_space` are orthonormal bases in the
    normalized coordinates; the covariance and information matrix are in the
    original parameter coordinates.
    """

    rank: int
    rank_deficiency: int
    marginal_rank: int
    marginal_rank_deficiency: int
    tolerance: float
    svd_tolerance: float
    singular_values: np.ndarray
    right_singular_vectors: np.ndarray
    r_factor: np.ndarray
    permutation: np.ndarray
    marginal_r_factor: np.ndarray
    scaling: np.ndarray
    sv_log2_sum: float


    @property
    def dimension(self) -> int:
        """Number of columns of the marginalized block."""
        return self.right_singular_vectors.shape[0]


    @property
    def total_rank(self) -> int:
        return self.marginal_rank + self.rank


    @property
    def null_space(self) -> np.ndarray:
        """Unobservable directions, shape ``(dimension, rank_deficiency)``."""
        return self.right_singular_vectors[:, self.rank:].copy()


    @property
    def column_space(self) -> np.ndarray:
        """Observable directions, shape ``(dimension, rank)``."""
        return self.right_singular_vectors[:, :self.rank].copy()


    @property
    def information_matrix(self) -> np.ndarray:
        """Fisher information ``S⁻¹ R22ᵀ R22 S⁻¹`` of the marginalized block."""
        R = self.marginal_r_factor / self.scaling
        return R.T @ R


    @property
    def covariance(self) -> np.ndarray:
        """Rank-truncated inverse ``S V_r diag(σ_r⁻²) V_rᵀ S``."""
        Vr = self.right_singular_vectors[:, :self.rank]
        inner = (Vr / self.singular_values[:self.rank] ** 2) @ Vr.T
        return self.scaling[:, None] * inner * self.scaling[None, :]


    @property
    def projected_covariance(self) -> np.ndarray:
        """Covariance of the observable coordinates ``column_spaceᵀ S⁻¹ θ``."""
        return np.diag(1.0 / self.singular_values[:self.rank] ** 2)


    @property
    def memory_usage(self) -> int:
        """Bytes held by the retained factors."""
        return int(
            self.r_factor.nbytes
            + self.permutation.nbytes
            + self.marginal_r_factor.nbytes
            + self.right_singular_vectors.nbytes
            + self.singular_values.nbytes
            + self.scaling.nbytes
        )


# FACTORIZATION =========================================================================

def rank_revealing_factor(
    jacobian,
    marg_start: int,
    *,
    tolerance: float = 0.02,
    column_normalize: bool = True,
    norm_tol: float = 1e-8,
    eps_tol_svd: float = 1e-4,
) -> RankRevealingFactorization:
    """Factorize *jacobian* and analyse its trailing block ``[:, marg_start:]``.

    The eliminated block ``J_o = J[:, :marg_start]`` is factorized with a
    column-pivoted QR; its numerical rank counts the ``|R_kk|`` above the QR
    tolerance.  The marginalized block is projected onto the orthogonal
    complement of ``range(J_o)``, which is exactly the Schur complement::

        R22ᵀ R22 = J_mᵀ (I − Q₁Q₁ᵀ) J_m

    and the SVD of ``R22`` gives rank, null space and column space.

    Parameters
    ----------
    jacobian : np.ndarray or scipy.sparse matrix
        Whitened Jacobian, marginalized columns trailing.
    marg_start : int
        First column of the marginalized block.
    tolerance : float
        QR rank tolerance.  Negative selects the SuiteSparseQR default
        (:func:`compute_qr_tolerance`).
    column_normalize : bool
        Scale columns to unit norm before factorizing.
    norm_tol : float
        Columns with norm at or below this are treated as zero.
    eps_tol_svd : float
        Factor of the spectral tolerance (:func:`compute_svd_tolerance`),
        used for the marginalized block when the QR tolerance is automatic
        or columns are not normalized.

    Returns
    -------
    RankRevealingFactorization
    """
    if sci_sparse.issparse(jacobian):
        J = jacobian.toarray()
    else:
        J = np.atleast_2d(np.asarray(jacobian, dtype=float))

    m, n = J.shape
    if marg_start < 0 or marg_start > n:
        raise ValueError(f"marg_start {marg_start} outside [0, {n}]")

    n_o = marg_start
    n_m = n - marg_start

    scale = column_scaling(J, norm_tol) if column_normalize else np.ones(n)
    Js = J * scale

    tol = float(tolerance) if tolerance >= 0 else compute_qr_tolerance(Js)

    # ── eliminated block: column-pivoted QR ──────────────────────────────
    if n_o > 0 and m > 0:
        Q, R, P = sci_linalg.qr(Js[:, :n_o], mode="economic", pivoting=True)
        r_o = int(np.sum(np.abs(np.diag(R)) > tol))
        Q1 = Q[:, :r_o]
    else:
        R = np.zeros((0, n_o))
        P = np.arange(n_o)
        r_o = 0
        Q1 = np.zeros((m, 0))

    # ── marginalized block: Schur complement square root ─────────────────
    R22 = np.zeros((n_m, n_m))
    if n_m > 0 and m > 0:
        B = Js[:, n_o:]
        if r_o > 0:
            B = B - Q1 @ (Q1.T @ B)
        k = min(m, n_m)
        R22[:k] = sci_linalg.qr(B, mode="r")[0][:k]

    if n_m > 0:
        _, sv, Vt = sci_linalg.svd(R22)
        V = Vt.T
    else:
        sv = np.zeros(0)
        V = np.zeros((0, 0))

    if tolerance >= 0 and column_normalize:
        svd_tol = tol
    else:
        svd_tol = compute_svd_tolerance(sv, eps_tol_svd)
    rank = int(np.sum(sv > svd_tol))

    s_m = scale[n_o:]
    if rank > 0:
        sv_orig = sci_linalg.svdvals(R22 / s_m)[:rank]
        sv_log2_sum = float(2.0 * np.sum(np.log2(np.maximum(sv_orig, np.finfo(float).tiny))))
    else:
        sv_log2_sum = 0.0

    return RankRevealingFactorization(
        rank=rank,
        rank_deficiency=n_m - rank,
        marginal_rank=r_o,
        marginal_rank_deficiency=n_o - r_o,
        tolerance=tol,
        svd_tolerance=svd_tol,
        singular_values=sv,
        right_singular_vectors=V,
        r_factor=R,
        permutation=np.asarray(P),
        marginal_r_factor=R22,
        scaling=s_m.copy(),
        sv_log2_sum=sv_log2_sum,
    )
