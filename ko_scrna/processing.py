#!/usr/bin/env python3
"""
Processing utilities for the WT vs KO single-cell RNA-seq pipeline
Handles normalization, scaling, variable features, PCA, UMAP and clustering

Every function returns a new AnnData object; inputs are never modified.
Leiden cluster ids are only reproducible when the same seed is used.
"""

import zlib

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from sklearn.metrics import silhouette_score

from ko_scrna.errors import DataError, ParameterError


def derive_seed(seed, *keys):
    """Derive a reproducible sub-seed for one unit of work

    Args:
        seed: Root seed of the run
        keys: Integers or strings identifying the unit (cohort, pN, ...)

    Returns:
        int usable as ``random_state`` by numpy, scanpy and sklearn
    """
    entropy = [int(seed)]
    for key in keys:
        if isinstance(key, str):
            entropy.append(zlib.crc32(key.encode("utf-8")))
        else:
            entropy.append(int(key))
    state = np.random.SeedSequence(entropy).generate_state(1)[0]
    return int(state % (2**31 - 1))


def normalize_data(adata, scale_factor=1e4):
    """Log-normalize counts to ``scale_factor`` reads per cell

    Raw counts are kept in ``layers["counts"]``.

    Returns:
        New AnnData with X = log1p(count / total * scale_factor)
    """
    if scale_factor <= 0:
        raise ParameterError(f"scale_factor must be positive, got {scale_factor}")
    adata = adata.copy()
    totals = np.asarray(adata.X.sum(axis=1)).ravel()
    if np.any(totals <= 0):
        raise DataError(
            f"{int(np.sum(totals <= 0))} cells have zero total counts", stage="normalize"
        )

    adata.layers["counts"] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=scale_factor)
    sc.pp.log1p(adata)
    return adata


def select_variable_features(adata, n=2000):
    """Rank genes by variance-stabilized dispersion and return the top n

    Fits a loess trend of variance on mean over raw counts (seurat_v3
    flavor) and ranks genes by their standardized variance.

    Args:
        adata: AnnData with raw counts in ``layers["counts"]`` or X
        n: Number of features to return

    Returns:
        List of gene symbols, most variable first
    """
    if n < 1:
        raise ParameterError(f"n must be at least 1, got {n}")
    layer = "counts" if "counts" in adata.layers else None
    n_top = int(min(n, adata.n_vars))
    hvg = sc.pp.highly_variable_genes(
        adata,
        flavor="seurat_v3",
        n_top_genes=n_top,
        layer=layer,
        inplace=False,
    )
    hvg.index = adata.var_names
    hvg = hvg[hvg["highly_variable"]]
    ranked = hvg.sort_values(
        ["highly_variable_rank", "variances_norm"], ascending=[True, False], kind="mergesort"
    )
    return ranked.index.tolist()


def scale_data(adata, features, max_value=10):
    """Z-score each feature across the active cells

    Genes with zero variance produce zeros.

    Returns:
        New AnnData restricted to ``features`` with dense scaled X
    """
    missing = [g for g in features if g not in adata.var_names]
    if missing:
        raise DataError(f"{len(missing)} features not in matrix, e.g. {missing[:5]}")
    sub = adata[:, list(features)].copy()
    if sparse.issparse(sub.X):
        sub.X = sub.X.toarray()
    sub.X = np.asarray(sub.X, dtype=np.float64)
    sc.pp.scale(sub, max_value=max_value)
    return sub


def reduce_dimensions(adata, features, n_components=30, seed=42, max_value=10):
    """PCA on the scaled variable features

    Returns:
        New AnnData with ``obsm["X_pca"]`` (cells x n_components)
    """
    scaled = scale_data(adata, features, max_value=max_value)
    n_comps = int(min(n_components, min(scaled.shape) - 1))
    if n_comps < 1:
        raise DataError(f"cannot compute PCA on a {scaled.shape} matrix", stage="pca")
    if n_comps < n_components:
        print(f"  Reducing to {n_comps} PCs (matrix is {scaled.shape[0]} x {scaled.shape[1]})")

    sc.tl.pca(scaled, n_comps=n_comps, svd_solver="arpack", random_state=seed)

    out = adata.copy()
    out.obsm["X_pca"] = scaled.obsm["X_pca"]
    out.uns["pca"] = scaled.uns["pca"]
    out.uns["variable_features"] = list(features)
    out.var["variable_feature"] = out.var_names.isin(features)
    return out


def build_knn_graph(adata, dims=30, k=20, seed=42, key_added=None):
    """k-nearest-neighbor graph over the first ``dims`` PCs"""
    if "X_pca" not in adata.obsm:
        raise DataError("no PCA embedding; run reduce_dimensions first", stage="neighbors")
    if dims > adata.obsm["X_pca"].shape[1]:
        raise ParameterError(
            f"dims={dims} exceeds the {adata.obsm['X_pca'].shape[1]} available PCs",
            stage="neighbors",
        )
    if k < 2 or k >= adata.n_obs:
        raise ParameterError(f"k={k} invalid for {adata.n_obs} cells", stage="neighbors")
    out = adata.copy()
    sc.pp.neighbors(
        out,
        n_neighbors=k,
        n_pcs=dims,
        use_rep="X_pca",
        random_state=seed,
        key_added=key_added,
    )
    return out


def cluster_cells(adata, resolution=0.5, seed=42, key_added="leiden", neighbors_key=None):
    """Leiden community detection on the kNN graph

    Higher resolution gives more, smaller clusters.
    """
    if resolution <= 0:
        raise ParameterError(f"resolution must be positive, got {resolution}", stage="cluster")
    connectivities = "connectivities" if neighbors_key is None else f"{neighbors_key}_connectivities"
    if connectivities not in adata.obsp:
        raise DataError("no neighbor graph; run build_knn_graph first", stage="cluster")
    out = adata.copy()
    sc.tl.leiden(
        out,
        resolution=float(resolution),
        random_state=seed,
        key_added=key_added,
        neighbors_key=neighbors_key,
        flavor="leidenalg",
        directed=False,
    )
    return out


def embed_nonlinear(adata, n_neighbors=30, min_dist=0.3, seed=42, dims=None):
    """2D UMAP layout from a dedicated neighbor graph on the PCA embedding"""
    if "X_pca" not in adata.obsm:
        raise DataError("no PCA embedding; run reduce_dimensions first", stage="umap")
    n_neighbors = int(min(n_neighbors, adata.n_obs - 1))
    out = adata.copy()
    sc.pp.neighbors(
        out,
        n_neighbors=n_neighbors,
        n_pcs=dims,
        use_rep="X_pca",
        random_state=seed,
        key_added="umap_graph",
    )
    sc.tl.umap(out, min_dist=min_dist, random_state=seed, neighbors_key="umap_graph")
    return out


def run_standard_workflow(adata, normalization, embedding, seed=42, resolution=None, umap=True):
    """Normalize, select features, PCA, kNN graph, Leiden and UMAP

    Args:
        adata: AnnData with raw counts in X
        normalization: NORMALIZATION parameter dict
        embedding: EMBEDDING parameter dict
        seed: Random seed for PCA, graph, clustering and UMAP
        resolution: Leiden resolution (defaults to embedding["resolution"])
        umap: Whether to compute the 2D layout

    Returns:
        New AnnData with log-normalized X, X_pca, leiden and X_umap
    """
    resolution = embedding["resolution"] if resolution is None else resolution

    print("Normalizing data...")
    adata = normalize_data(adata, scale_factor=normalization["scale_factor"])

    print("Selecting variable features...")
    features = select_variable_features(adata, n=normalization["n_variable_features"])

    print("Running PCA...")
    adata = reduce_dimensions(
        adata,
        features,
        n_components=embedding["n_pcs"],
        seed=seed,
        max_value=normalization["scale_max"],
    )

    print("Computing neighborhood graph...")
    dims = int(min(embedding["dims"], adata.obsm["X_pca"].shape[1]))
    k = int(min(embedding["k"], adata.n_obs - 1))
    adata = build_knn_graph(adata, dims=dims, k=k, seed=seed)

    print("Clustering...")
    adata = cluster_cells(adata, resolution=resolution, seed=seed)
    print(f"  {adata.obs['leiden'].nunique()} clusters at resolution {resolution}")

    if umap:
        print("Running UMAP...")
        adata = embed_nonlinear(
            adata,
            n_neighbors=embedding["umap_n_neighbors"],
            min_dist=embedding["umap_min_dist"],
            seed=seed,
            dims=dims,
        )

    return adata


def choose_leiden_resolution(adata, resolution_grid=None, min_cluster_size=20, seed=42):
    """Sweep Leiden resolutions and pick a robust choice.

    Strategy:
    - Compute Leiden for a grid of resolutions on the existing kNN graph
    - Evaluate silhouette on PCA space and fraction of cells in small clusters
    - Select the resolution with highest silhouette; among ties within 0.02 of max,
      prefer lower small-cluster fraction, then fewer clusters, then lower resolution

    Returns:
    - (chosen resolution, sweep metrics DataFrame)
    """
    if resolution_grid is None:
        resolution_grid = np.round(np.arange(0.2, 2.05, 0.1), 2)
    if "X_pca" not in adata.obsm:
        raise DataError("no PCA embedding; run reduce_dimensions first", stage="cluster")

    X = adata.obsm["X_pca"]

    metrics = []
    for res in resolution_grid:
        labels = cluster_cells(adata, resolution=float(res), seed=seed).obs["leiden"].astype(str)

        n_clusters = labels.nunique()
        small_frac = 0.0
        sil = np.nan
        if 1 < n_clusters < len(labels):
            counts = labels.value_counts()
            small_frac = float(
                counts[counts < max(2, int(min_cluster_size))].sum() / len(labels)
            )
            sil = float(silhouette_score(X, labels))

        metrics.append(
            {
                "resolution": float(res),
                "n_clusters": int(n_clusters),
                "silhouette": sil,
                "small_cluster_fraction": small_frac,
            }
        )

    metrics_df = pd.DataFrame(metrics)

    # 1) max silhouette; 2) within 0.02: smallest small-cluster fraction,
    # 3) fewest clusters, 4) lowest resolution
    if metrics_df["silhouette"].notna().any():
        max_sil = metrics_df["silhouette"].max()
        near = metrics_df[np.abs(metrics_df["silhouette"] - max_sil) <= 0.02]
        chosen = near.sort_values(
            by=["small_cluster_fraction", "n_clusters", "resolution"],
            ascending=[True, True, True],
        ).iloc[0]
    else:
        # Fallback: lowest resolution with >1 cluster
        candidates = metrics_df[metrics_df["n_clusters"] > 1]
        pool = candidates if not candidates.empty else metrics_df
        chosen = pool.sort_values("resolution").iloc[0]

    chosen_res = float(chosen["resolution"])
    print(f"Chosen Leiden resolution: {chosen_res}")
    return chosen_res, metrics_df
