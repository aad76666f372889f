#########################################################################################
##
##                 MARGINALIZED-GROUP OBSERVABILITY & UNCERTAINTY REPORT
##                              (marginal_analysis.py)
##
##                                  Kevin McBride 2026
##
#########################################################################################

# IMPORTS ===============================================================================

import numpy as np

from ..solvers import RankRevealingFactorization


# CLASS: MarginalAnalysis ===============================================================

class MarginalAnalysis:
    """Labelled view of a persisted :class:`RankRevealingFactorization`.

    Nothing is re-derived from the information matrix: rank, null space,
    covariance and spectrum are those of the factorization the estimator
    persisted on its last accepted transition.  The view only attaches
    coordinate names and values and reads off per-coordinate statistics.

    Parameters
    ----------
    factorization : RankRevealingFactorization
        Factorization of the accumulated Jacobian, marginalized block trailing.
    param_names : list of str
        Coordinate labels, one per marginalized column.
    param_values : np.ndarray
        Current values of the marginalized coordinates.

    Attributes
    ----------
    std_errors : np.ndarray
        ``√diag(covariance)``; zero along unobservable coordinates.
    correlation : np.ndarray
        Covariance normalised by the standard errors, unit diagonal.
    observable : np.ndarray of bool
        False for coordinates with a component in the null space.
    """

    def __init__(self, factorization: RankRevealingFactorization, param_names, param_values):
        self.factorization = factorization
        self.param_names   = list(param_names)
        self.param_values  = np.asarray(param_values, dtype=float)

        n = factorization.dimension
        if len(self.param_names) != n or self.param_values.size != n:
            raise ValueError(
                f"expected {n} parameter names and values, got "
                f"{len(self.param_names)} and {self.param_values.size}"
            )

        cov = factorization.covariance
        self.std_errors = np.sqrt(np.clip(np.diag(cov), 0.0, None))

        denom = np.outer(self.std_errors, self.std_errors)
        self.correlation = np.divide(cov, denom, out=np.zeros_like(cov), where=denom > 0.0)
        np.fill_diagonal(self.correlation, 1.0)

        # S is diagonal, so a zero row of the normalized null space is a zero row of S N
        self.observable = np.linalg.norm(factorization.null_space, axis=1) < 1e-6


    # VIEW ==============================================================================

    @property
    def rank(self) -> int:
        return self.factorization.rank


    @property
    def dimension(self) -> int:
        return self.factorization.dimension


    @property
    def null_space(self) -> np.ndarray:
        return self.factorization.null_space


    @property
    def covariance(self) -> np.ndarray:
        return self.factorization.covariance


    @property
    def singular_values(self) -> np.ndarray:
        """Singular values of ``R22`` in column-normalized coordinates."""
        return self.factorization.singular_values


    @property
    def condition_number(self) -> float:
        """``(σ_max / σ_min)²`` of the normalized information; ``inf`` if deficient."""
        sv = self.singular_values
        if self.dimension == 0 or self.rank < self.dimension:
            return np.inf
        return float((sv[0] / sv[-1]) ** 2)


    def null_directions(self, threshold: float = 0.05) -> list:
        """Unobservable directions as ``[(name, weight), ...]`` per null vector,
        dropping weights below *threshold* in magnitude."""
        out = []
        for v in self.null_space.T:
            out.append([
                (name, float(w)) for name, w in zip(self.param_names, v)
                if abs(w) >= threshold
            ])
        return out


    # DISPLAY ===========================================================================

    def display(self) -> None:
        """Print values, standard errors and the unobservable directions."""
        W    = 72
        line = "=" * W
        dash = "-" * W

        print(line)
        print(f"  Marginalized group: rank {self.rank} / {self.dimension}, "
              f"condition {self.condition_number:.3g}")
        print(line)
        print(f"  {'Coordinate':<24} {'Value':>12} {'Std Error':>12} {'Observable':>12}")
        print(dash)
        for name, val, se, obs in zip(
            self.param_names, self.param_values, self.std_errors, self.observable
        ):
            print(f"  {name:<24} {val:>12.5g} {se:>12.4g} {'yes' if obs else 'no':>12}")
        print(dash)

        directions = self.null_directions()
        if not directions:
            print("  All coordinates observable")
        for k, terms in enumerate(directions):
            combo = " ".join(f"{w:+.3f}*{name}" for name, w in terms)
            print(f"  Null direction {k + 1}: {combo}")
        print(line)


    # PLOT ==============================================================================

    def plot(self, *, figsize: tuple = (7, 3.5)):
        """Bar chart of the normalized singular values against the SVD tolerance.

        Returns
        -------
        fig : matplotlib.figure.Figure
        ax : matplotlib.axes.Axes
        """
        import matplotlib.pyplot as plt

        sv  = self.singular_values
        tol = self.factorization.svd_tolerance

        fig, ax = plt.subplots(figsize=figsize)
        colors = ["steelblue" if k < self.rank else "salmon" for k in range(sv.size)]
        ax.bar(range(sv.size), np.maximum(sv, np.finfo(float).tiny), color=colors)
        if tol > 0.0:
            ax.axhline(tol, color="k", ls="--", lw=1, label="SVD tolerance")
            ax.legend()
        ax.set_yscale("log")
        ax.set_xticks(range(sv.size))
        ax.set_xlabel("Singular direction")
        ax.set_ylabel("σ (normalized)")
        ax.set_title("Marginal information spectrum (red = unobservable)")
        ax.grid(True, axis="y", alpha=0.3)
        plt.tight_layout()
        return fig, ax
