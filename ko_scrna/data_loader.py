#!/usr/bin/env python3
"""
Data loading utilities for the WT vs KO single-cell RNA-seq pipeline
Handles 10x directory / H5 loading, gene support filtering and merging
"""

from pathlib import Path

import anndata
import h5py
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse

from ko_scrna.errors import DataError


def _decode(values):
    return [v.decode("utf-8") if isinstance(v, bytes) else str(v) for v in values]


def _h5_matrix_group(f, file_path):
    """The count matrix group: ``matrix`` (v3 / CellBender) or the single genome group (v2)"""
    if "matrix" in f:
        return f["matrix"]
    genomes = [key for key in f if isinstance(f[key], h5py.Group) and "barcodes" in f[key]]
    if len(genomes) == 1:
        return f[genomes[0]]
    raise DataError(
        f"{file_path} has no 'matrix' group and {len(genomes)} genome groups", stage="load"
    )


def load_cellbender_h5(file_path):
    """Load a CellBender or Cell Ranger count matrix from an H5 file

    Reads the v3 layout (``matrix/features/name``) and the legacy v2 layout
    (``<genome>/gene_names``). Matrices are stored genes x cells.

    Args:
        file_path: Path to the H5 file

    Returns:
        AnnData object with raw counts (cells x genes)
    """
    with h5py.File(file_path, "r") as f:
        group = _h5_matrix_group(f, file_path)
        if "features" in group:
            symbols = _decode(group["features"]["name"][:])
            gene_ids = _decode(group["features"]["id"][:])
        else:
            symbols = _decode(group["gene_names"][:])
            gene_ids = _decode(group["genes"][:])
        barcodes = _decode(group["barcodes"][:])
        n_genes, n_cells = (int(n) for n in group["shape"][:])
        genes_by_cells = sparse.csc_matrix(
            (group["data"][:], group["indices"][:], group["indptr"][:]),
            shape=(n_genes, n_cells),
        )

    if (n_genes, n_cells) != (len(symbols), len(barcodes)):
        raise DataError(
            f"{file_path}: matrix is {n_genes} x {n_cells} but lists "
            f"{len(symbols)} genes and {len(barcodes)} barcodes",
            stage="load",
        )

    adata = anndata.AnnData(
        X=genes_by_cells.T.tocsr(),
        obs=pd.DataFrame(index=pd.Index(barcodes)),
        var=pd.DataFrame({"gene_ids": gene_ids}, index=pd.Index(symbols)),
    )
    adata.var_names_make_unique()
    return adata


def read_counts(path):
    """Read a raw count matrix from a 10x directory or an H5 file"""
    path = Path(path)
    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", make_unique=True)
    elif path.suffix == ".h5":
        adata = load_cellbender_h5(path)
    else:
        raise DataError(
            f"{path} is neither a 10x matrix directory nor an .h5 file", stage="load"
        )
    adata.X = sparse.csr_matrix(adata.X)
    return adata


def build_cohort(adata, cohort, genotype, min_cells=3):
    """Turn a raw matrix into a cohort store

    Prefixes barcodes with the cohort name, labels the genotype and drops
    genes detected in fewer than ``min_cells`` cells. Gene support is
    evaluated here, once, before any cell is filtered.

    Args:
        adata: AnnData with raw counts
        cohort: Cohort name used as barcode prefix
        genotype: Genotype label (e.g. "WT" or "KO")
        min_cells: Minimum cells expressing a gene

    Returns:
        New AnnData object
    """
    if adata.n_obs == 0 or adata.n_vars == 0:
        raise DataError(
            f"empty count matrix ({adata.n_obs} cells x {adata.n_vars} genes)",
            stage="load",
            cohort=cohort,
        )
    X = sparse.csr_matrix(adata.X)
    if X.nnz and X.data.min() < 0:
        raise DataError("negative counts in matrix", stage="load", cohort=cohort)

    adata = anndata.AnnData(
        X=X.astype(np.float32),
        obs=adata.obs[[]].copy(),
        var=adata.var.copy(),
    )
    adata.obs_names = [f"{cohort}_{barcode}" for barcode in adata.obs_names]
    if adata.obs_names.duplicated().any():
        dupes = adata.obs_names[adata.obs_names.duplicated()].unique()[:5].tolist()
        raise DataError(
            f"duplicate barcodes after prefixing: {dupes}", stage="load", cohort=cohort
        )

    adata.obs["cohort"] = cohort
    adata.obs["genotype"] = genotype

    n_genes = adata.n_vars
    n_cells_per_gene = np.asarray((adata.X > 0).sum(axis=0)).ravel()
    adata = adata[:, n_cells_per_gene >= min_cells].copy()
    print(
        f"  {cohort}: {adata.n_obs} cells, kept {adata.n_vars}/{n_genes} genes "
        f"detected in >= {min_cells} cells"
    )
    if adata.n_vars == 0:
        raise DataError(
            f"no gene is detected in >= {min_cells} cells", stage="load", cohort=cohort
        )

    return adata


def load_cohort(path, cohort, genotype, min_cells=3):
    """Load one cohort from disk (10x directory or H5 file)"""
    print(f"Loading {cohort} ({genotype}) from {path}")
    try:
        adata = read_counts(path)
    except DataError as err:
        err.cohort = cohort
        raise
    return build_cohort(adata, cohort, genotype, min_cells=min_cells)


def merge_cohorts(cohorts):
    """Merge cohort stores into a single matrix

    Genes absent from a cohort are filled with zero counts.

    Args:
        cohorts: List of cohort AnnData objects from ``build_cohort``

    Returns:
        Merged AnnData object
    """
    print("Merging cohorts...")
    merged = anndata.concat(cohorts, join="outer", fill_value=0)
    if merged.obs_names.duplicated().any():
        dupes = merged.obs_names[merged.obs_names.duplicated()].unique()[:5].tolist()
        raise DataError(f"duplicate barcodes across cohorts: {dupes}", stage="merge")
    merged.X = sparse.csr_matrix(merged.X)
    merged.obs["cohort"] = merged.obs["cohort"].astype(str)
    merged.obs["genotype"] = merged.obs["genotype"].astype(str)
    print(f"Merged: {merged.n_obs} cells x {merged.n_vars} genes")
    return merged
