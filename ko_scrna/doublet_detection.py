#!/usr/bin/env python3
"""
Doublet detection utilities for the WT vs KO single-cell RNA-seq pipeline

Each cohort is processed independently:
1. Cluster the cohort to get a reference partition (homotypic estimate only)
2. Sweep pK: simulate synthetic doublets by averaging random pairs of real
   cells, re-embed real + synthetic cells, and score every real cell by the
   proportion of synthetic cells among its k nearest neighbours (pANN)
3. Pick the pK whose pANN distribution is most bimodal (BCmetric)
4. Expected doublets nExp = round(n * rate), reduced by the homotypic
   proportion sum(frac_c ** 2) of the reference clusters
5. The nExp_adjusted cells with the highest pANN are Doublets, the rest
   Singlets (a fixed count, not a score cutoff)
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
from scipy import sparse, stats
from sklearn.neighbors import NearestNeighbors

from ko_scrna.errors import DataError, StatisticalDegeneracy
from ko_scrna.processing import (
    derive_seed,
    normalize_data,
    reduce_dimensions,
    run_standard_workflow,
    select_variable_features,
)

DOUBLET = "Doublet"
SINGLET = "Singlet"
UNSCORED = "Unscored"


@dataclass
class DoubletAudit:
    """Per-cohort doublet detection record"""

    cohort: str
    n_cells: int
    optimal_pK: Optional[float]
    homotypic_proportion: Optional[float]
    n_exp: int
    n_exp_adjusted: int
    doublet_count: int
    singlet_count: int
    unscored_count: int = 0
    status: str = "ok"
    reason: str = ""


def simulate_doublets(counts, pN, rng):
    """Append synthetic doublets to a raw count matrix

    Each synthetic doublet is the average of two real cells drawn with
    replacement; enough are made that they form a fraction pN of the
    merged matrix.

    Args:
        counts: cells x genes sparse count matrix
        pN: Fraction of the merged matrix made of synthetic doublets
        rng: numpy Generator

    Returns:
        (merged csr matrix with real cells first, number of synthetic cells)
    """
    counts = sparse.csr_matrix(counts)
    n_real = counts.shape[0]
    n_synthetic = int(round(n_real / (1 - pN) - n_real))
    first = rng.integers(0, n_real, size=n_synthetic)
    second = rng.integers(0, n_real, size=n_synthetic)
    synthetic = (counts[first] + counts[second]) * 0.5
    merged = sparse.vstack([counts, synthetic]).tocsr()
    return merged, n_synthetic


def embed_with_doublets(counts, var_names, pN, n_pcs=10, n_features=2000, seed=42):
    """PCA coordinates of real + synthetic cells

    The merged matrix goes through the same normalize / variable feature /
    scale / PCA path as the real data.

    Returns:
        (coordinates, n_real) with real cells in the first n_real rows
    """
    rng = np.random.default_rng(seed)
    merged, _ = simulate_doublets(counts, pN, rng)
    n_real = counts.shape[0]

    merged_adata = anndata.AnnData(
        X=merged.astype(np.float32), var=pd.DataFrame(index=pd.Index(var_names))
    )
    merged_adata = normalize_data(merged_adata)
    features = select_variable_features(merged_adata, n=n_features)
    merged_adata = reduce_dimensions(merged_adata, features, n_components=n_pcs, seed=seed)
    return merged_adata.obsm["X_pca"], n_real


def neighbor_ks(n_merged, pK_grid):
    """Map each pK to its neighbourhood size k = round(n_merged * pK)

    pK values giving k < 1 cannot be scored and are left out.
    """
    ks = {}
    for pK in sorted(pK_grid):
        k = int(round(n_merged * pK))
        if k >= 1:
            ks[pK] = min(k, n_merged - 1)
    return ks


def artificial_neighbor_fractions(coords, n_real, ks, chunk_size=1000):
    """pANN of every real cell for each neighbourhood size in ``ks``

    Neighbours are searched among all (real + synthetic) cells, the cell
    itself excluded.

    Args:
        coords: Embedding with real cells in the first n_real rows
        n_real: Number of real cells
        ks: Iterable of neighbourhood sizes

    Returns:
        Dict k -> array of length n_real
    """
    ks = sorted(set(int(k) for k in ks))
    k_max = ks[-1]
    nn = NearestNeighbors(n_neighbors=k_max + 1)
    nn.fit(coords)

    fractions = {k: np.empty(n_real, dtype=float) for k in ks}
    cols = np.asarray(ks) - 1
    for start in range(0, n_real, chunk_size):
        stop = min(start + chunk_size, n_real)
        idx = nn.kneighbors(coords[start:stop], return_distance=False)
        rows = np.arange(start, stop)
        keep = idx != rows[:, None]
        # Duplicated coordinates can push the cell itself out of its list
        keep[keep.all(axis=1), -1] = False
        idx = idx[keep].reshape(stop - start, k_max)
        hits = np.cumsum(idx >= n_real, axis=1)[:, cols]
        for j, k in enumerate(ks):
            fractions[k][start:stop] = hits[:, j] / k
    return fractions


def bimodality_coefficient(values):
    """Sample bimodality coefficient (G1^2 + 1) / (G2 + 3(n-1)^2 / ((n-2)(n-3)))

    NaN when the distribution is constant or has fewer than 4 values.
    """
    values = np.asarray(values, dtype=float)
    n = values.size
    if n < 4 or np.ptp(values) == 0:
        return np.nan
    skewness = stats.skew(values, bias=False)
    kurtosis = stats.kurtosis(values, fisher=True, bias=False)
    return (skewness**2 + 1) / (kurtosis + 3 * (n - 1) ** 2 / ((n - 2) * (n - 3)))


def _score_pk(pN, pK, k, pann):
    return {"pN": pN, "pK": pK, "k": k, "bc": bimodality_coefficient(pann)}


def _sweep_pn(counts, var_names, pN, params, seed, cohort):
    """Embed one pN and score every pK on a single neighbour query"""
    coords, n_real = embed_with_doublets(
        counts,
        var_names,
        pN,
        n_pcs=params["n_pcs"],
        n_features=params["n_variable_features"],
        seed=seed,
    )
    ks = neighbor_ks(coords.shape[0], params["pK_grid"])
    dropped = sorted(set(params["pK_grid"]) - set(ks))
    if dropped:
        print(f"  pN={pN}: pK {dropped} give k < 1, not scored")
    if not ks:
        raise StatisticalDegeneracy(
            "no pK in the grid yields a neighbourhood of at least one cell",
            stage="doublet_sweep",
            cohort=cohort,
        )
    fractions = artificial_neighbor_fractions(coords, n_real, ks.values())
    return [_score_pk(pN, pK, k, fractions[k]) for pK, k in ks.items()]


def param_sweep(adata, params, seed=42, cohort=None, n_jobs=1):
    """Bimodality of pANN over the pN x pK grid

    Each pN is a unit of work (doublet simulation, embedding and one
    neighbour query shared by all pK) run in a thread pool with its own
    derived seed; rows are merged sorted by pK then pN.

    Args:
        adata: Cohort AnnData with raw counts in X
        params: DOUBLET_PARAMS dict
        seed: Seed for subsampling and doublet simulation
        cohort: Cohort name for messages
        n_jobs: Threads across pN values

    Returns:
        DataFrame with one row per (pN, pK): pN, pK, k, bc
    """
    n_cells = adata.n_obs
    if n_cells < params["min_cells"]:
        raise StatisticalDegeneracy(
            f"{n_cells} cells is below the minimum of {params['min_cells']} "
            "needed for the doublet parameter sweep",
            stage="doublet_sweep",
            cohort=cohort,
        )

    counts = sparse.csr_matrix(adata.X)
    if n_cells > params["max_sweep_cells"]:
        rng = np.random.default_rng(derive_seed(seed, "subsample"))
        keep = np.sort(rng.choice(n_cells, size=params["max_sweep_cells"], replace=False))
        counts = counts[keep]
        print(f"  Subsampled {counts.shape[0]} of {n_cells} cells for the sweep")

    with ThreadPoolExecutor(max_workers=max(1, n_jobs)) as executor:
        futures = [
            executor.submit(
                _sweep_pn,
                counts,
                adata.var_names,
                pN,
                params,
                derive_seed(seed, "sweep", i),
                cohort,
            )
            for i, pN in enumerate(params["sweep_pN"])
        ]
        rows = [row for future in futures for row in future.result()]

    sweep = pd.DataFrame(rows, columns=["pN", "pK", "k", "bc"])
    return sweep.sort_values(["pK", "pN"], kind="mergesort").reset_index(drop=True)


def summarize_sweep(sweep):
    """BCmetric per pK

    With several pN values BCmetric = mean(BC) / var(BC) across pN; with a
    single pN it is the bimodality coefficient itself.

    Returns:
        DataFrame sorted by ascending pK: pK, mean_bc, var_bc, bc_metric
    """
    grouped = sweep.groupby("pK", sort=True)["bc"]
    summary = pd.DataFrame(
        {
            "mean_bc": grouped.mean(),
            "var_bc": grouped.var(ddof=1),
            "n_pN": grouped.size(),
        }
    ).reset_index()
    with np.errstate(divide="ignore", invalid="ignore"):
        summary["bc_metric"] = np.where(
            summary["n_pN"] > 1, summary["mean_bc"] / summary["var_bc"], summary["mean_bc"]
        )
    return summary[["pK", "mean_bc", "var_bc", "bc_metric"]]


def find_optimal_pk(summary, cohort=None):
    """First pK (ascending) reaching the maximum BCmetric"""
    metric = summary["bc_metric"].to_numpy(dtype=float)
    valid = ~np.isnan(metric)
    if not valid.any():
        raise StatisticalDegeneracy(
            "pANN is constant for every pK; BCmetric is undefined",
            stage="doublet_sweep",
            cohort=cohort,
        )
    best = np.max(metric[valid])
    first = int(np.flatnonzero(valid & (metric == best))[0])
    return float(summary["pK"].iloc[first])


def homotypic_proportion(labels):
    """Sum of squared cluster fractions"""
    fractions = pd.Series(labels).value_counts(normalize=True)
    return float(np.sum(fractions.to_numpy() ** 2))


def expected_doublets(n_cells, doublet_rate, homotypic):
    """(nExp, nExp_adjusted) for a cohort"""
    n_exp = int(round(n_cells * doublet_rate))
    n_exp_adjusted = int(round(n_exp * (1 - homotypic)))
    return n_exp, n_exp_adjusted


def classify_doublets(pann, n_doublets):
    """Label the n_doublets highest-pANN cells as Doublet

    Ties keep cell order.
    """
    pann = np.asarray(pann, dtype=float)
    labels = np.full(pann.size, SINGLET, dtype=object)
    order = np.argsort(-pann, kind="stable")
    labels[order[:n_doublets]] = DOUBLET
    return labels


def reference_clusters(adata, params, seed=42):
    """Leiden partition of one cohort, used only for the homotypic estimate"""
    clustered = run_standard_workflow(
        adata,
        params["normalization"],
        params["embedding"],
        seed=seed,
        resolution=params["doublet"]["reference_resolution"],
        umap=False,
    )
    return clustered.obs["leiden"].astype(str)


def detect_doublets_cohort(adata, params, seed=42, cohort=None, n_jobs=1):
    """Run the full doublet procedure on one cohort

    Args:
        adata: QC-filtered cohort AnnData with raw counts in X
        params: Full parameter dict (normalization, embedding, doublet)
        seed: Cohort seed
        cohort: Cohort name
        n_jobs: Threads across the pN values of the sweep

    Returns:
        (per-cell DataFrame with pANN and doublet_class, DoubletAudit,
         sweep summary DataFrame)
    """
    dp = params["doublet"]
    cohort = cohort or "cohort"
    n_cells = adata.n_obs
    print(f"\nProcessing cohort: {cohort} ({n_cells} cells)")

    if n_cells < dp["min_cells"]:
        raise StatisticalDegeneracy(
            f"{n_cells} cells is below the minimum of {dp['min_cells']} "
            "needed for the doublet parameter sweep",
            stage="doublet_sweep",
            cohort=cohort,
        )
    if sparse.csr_matrix(adata.X).sum() <= 0:
        raise DataError("cohort has no counts", stage="doublet", cohort=cohort)

    print("  Reference clustering...")
    labels = reference_clusters(adata, params, seed=derive_seed(seed, "reference"))
    homotypic = homotypic_proportion(labels)
    print(f"  {labels.nunique()} reference clusters, homotypic proportion {homotypic:.3f}")

    print("  pK sweep...")
    sweep = param_sweep(adata, dp, seed=seed, cohort=cohort, n_jobs=n_jobs)
    summary = summarize_sweep(sweep)
    optimal_pk = find_optimal_pk(summary, cohort=cohort)
    print(f"  Optimal pK: {optimal_pk}")

    coords, n_real = embed_with_doublets(
        sparse.csr_matrix(adata.X),
        adata.var_names,
        dp["pN"],
        n_pcs=dp["n_pcs"],
        n_features=dp["n_variable_features"],
        seed=derive_seed(seed, "final"),
    )
    k = neighbor_ks(coords.shape[0], [optimal_pk])[optimal_pk]
    pann = artificial_neighbor_fractions(coords, n_real, [k])[k]

    n_exp, n_exp_adjusted = expected_doublets(n_cells, dp["doublet_rate"], homotypic)
    status, reason = "ok", ""
    if labels.nunique() == 1:
        status = "degenerate"
        reason = "single reference cluster; every doublet is homotypic"
        print(f"  Warning: {reason}")

    classes = classify_doublets(pann, n_exp_adjusted)
    n_doublets = int(np.sum(classes == DOUBLET))

    audit = DoubletAudit(
        cohort=cohort,
        n_cells=n_cells,
        optimal_pK=optimal_pk,
        homotypic_proportion=homotypic,
        n_exp=n_exp,
        n_exp_adjusted=n_exp_adjusted,
        doublet_count=n_doublets,
        singlet_count=n_cells - n_doublets,
        status=status,
        reason=reason,
    )

    print(f"  Expected doublets: {n_exp} (adjusted {n_exp_adjusted})")
    print(f"  Doublets: {n_doublets} ({n_doublets / n_cells * 100:.1f}%)")

    cells = pd.DataFrame(
        {"pANN": pann, "doublet_class": classes}, index=adata.obs_names.copy()
    )
    return cells, audit, summary


def _skipped_cohort(adata, cohort, err):
    cells = pd.DataFrame(
        {"pANN": np.nan, "doublet_class": UNSCORED}, index=adata.obs_names.copy()
    )
    audit = DoubletAudit(
        cohort=cohort,
        n_cells=adata.n_obs,
        optimal_pK=None,
        homotypic_proportion=None,
        n_exp=0,
        n_exp_adjusted=0,
        doublet_count=0,
        singlet_count=0,
        unscored_count=adata.n_obs,
        status="skipped",
        reason=err.message,
    )
    return cells, audit, pd.DataFrame(columns=["pK", "mean_bc", "var_bc", "bc_metric"])


def _run_cohort(adata, params, seed, cohort, n_jobs):
    try:
        return detect_doublets_cohort(adata, params, seed=seed, cohort=cohort, n_jobs=n_jobs)
    except StatisticalDegeneracy as err:
        print(f"  Skipping {cohort}: {err}")
        return _skipped_cohort(adata, cohort, err)


def detect_doublets(adata, params, cohort_key="cohort", seed=None, n_jobs=None):
    """Doublet detection for every cohort of a merged dataset

    Cohorts never share state; each gets its own derived seed. Cohorts too
    small for the sweep are kept unscored and recorded in the audit.

    Args:
        adata: QC-filtered AnnData with raw counts in X
        params: Full parameter dict
        cohort_key: obs column holding the cohort name
        seed: Root seed (defaults to params["seed"])
        n_jobs: Threads across cohorts, split among their sweeps (defaults to params)

    Returns:
        (new AnnData with obs pANN / doublet_class, audit DataFrame,
         dict cohort -> sweep summary)
    """
    print("Running doublet detection...")
    seed = params["seed"] if seed is None else seed
    n_jobs = params["doublet"]["n_jobs"] if n_jobs is None else n_jobs
    cohorts = [str(c) for c in pd.unique(adata.obs[cohort_key].astype(str))]

    units = []
    for cohort in cohorts:
        mask = (adata.obs[cohort_key].astype(str) == cohort).to_numpy()
        units.append((cohort, adata[mask].copy(), derive_seed(seed, cohort)))

    # Threads are shared out between the cohorts and their sweeps
    sweep_jobs = max(1, n_jobs // max(1, len(units)))
    with ThreadPoolExecutor(max_workers=max(1, n_jobs)) as executor:
        futures = [
            executor.submit(_run_cohort, sub, params, unit_seed, cohort, sweep_jobs)
            for cohort, sub, unit_seed in units
        ]
        results = [future.result() for future in futures]

    cells = pd.concat([r[0] for r in results])
    audit = pd.DataFrame([asdict(r[1]) for r in results])
    sweeps = {cohort: r[2] for (cohort, _, _), r in zip(units, results)}

    out = adata.copy()
    out.obs["pANN"] = cells.loc[out.obs_names, "pANN"].to_numpy()
    out.obs["doublet_class"] = cells.loc[out.obs_names, "doublet_class"].to_numpy()

    print("\nDoublet detection summary:")
    print(audit[["cohort", "n_cells", "n_exp_adjusted", "doublet_count", "unscored_count", "status"]])

    return out, audit, sweeps


def remove_doublets(adata):
    """Drop cells classified as Doublet (unscored cells are kept)"""
    if "doublet_class" not in adata.obs:
        raise DataError("no doublet classification; run detect_doublets first", stage="doublet")
    keep = (adata.obs["doublet_class"] != DOUBLET).to_numpy()
    print(f"Removing {int((~keep).sum())} doublets, {int(keep.sum())} cells remain")
    return adata[keep].copy()
