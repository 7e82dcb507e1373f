#!/usr/bin/env python3
"""
Quality control utilities for the WT vs KO single-cell RNA-seq pipeline
Handles QC metrics calculation, cell filtering and the QC audit table
"""

from dataclasses import asdict, dataclass

import numpy as np
import pandas as pd
import scanpy as sc

from ko_scrna.errors import DataError, ParameterError

QC_COLUMNS = ["n_genes_by_counts", "total_counts", "percent_mt", "percent_rbp"]


@dataclass
class QCAudit:
    """Before/after QC record for one cohort"""

    cohort: str
    cells_before: int
    cells_after: int
    genes_before: int
    genes_after: int
    median_features_before: float
    median_features_after: float
    median_percent_mt_before: float
    median_percent_mt_after: float


def calculate_qc_metrics(adata, mt_pattern=r"^mt-", ribo_pattern=r"^Rp[sl]"):
    """Calculate QC metrics

    Args:
        adata: AnnData object with raw counts in X
        mt_pattern: Regex matching mitochondrial gene symbols
        ribo_pattern: Regex matching ribosomal protein gene symbols

    Returns:
        New AnnData object with n_genes_by_counts, total_counts,
        percent_mt and percent_rbp in obs
    """
    print("Calculating QC metrics...")
    adata = adata.copy()

    adata.var["mt"] = adata.var_names.str.match(mt_pattern)
    adata.var["rbp"] = adata.var_names.str.match(ribo_pattern)

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt", "rbp"],
        percent_top=None,
        log1p=False,
        inplace=True,
    )

    # Explicit names; cells without counts get NaN and fail every filter
    totals = adata.obs["total_counts"].to_numpy(dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        adata.obs["percent_mt"] = adata.obs["total_counts_mt"].to_numpy() / totals * 100
        adata.obs["percent_rbp"] = adata.obs["total_counts_rbp"].to_numpy() / totals * 100

    print(
        f"  {int(adata.var['mt'].sum())} mitochondrial, "
        f"{int(adata.var['rbp'].sum())} ribosomal genes matched"
    )
    return adata


def filter_cells(adata, min_features=400, max_mt_pct=5, cohort=None):
    """Apply QC filtering

    A cell is kept iff n_genes_by_counts > min_features and
    percent_mt < max_mt_pct. Genes without counts in the kept cells are
    dropped afterwards. The input object is not modified.

    Args:
        adata: AnnData object with QC metrics
        min_features: Genes per cell must exceed this value
        max_mt_pct: Mitochondrial percentage must be below this value
        cohort: Cohort name used in error messages

    Returns:
        Filtered AnnData object
    """
    if min_features < 0 or not 0 < max_mt_pct <= 100:
        raise ParameterError(
            f"invalid QC thresholds min_features={min_features}, max_mt_pct={max_mt_pct}",
            stage="qc",
            cohort=cohort,
        )
    missing = [c for c in QC_COLUMNS if c not in adata.obs]
    if missing:
        raise DataError(
            f"QC metrics missing: {missing}; run calculate_qc_metrics first",
            stage="qc",
            cohort=cohort,
        )

    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    keep = (adata.obs["n_genes_by_counts"] > min_features) & (
        adata.obs["percent_mt"] < max_mt_pct
    )
    filtered = adata[keep.to_numpy()].copy()
    if filtered.n_obs == 0:
        raise DataError(
            f"no cells survive QC (nFeature > {min_features}, percent_mt < {max_mt_pct})",
            stage="qc",
            cohort=cohort,
        )

    gene_support = np.asarray((filtered.X > 0).sum(axis=0)).ravel()
    filtered = filtered[:, gene_support > 0].copy()

    print(f"After filtering: {filtered.n_obs} cells and {filtered.n_vars} genes")

    return filtered


def qc_audit_table(before, after, cohort_key="cohort"):
    """Summarize QC per cohort

    Args:
        before: AnnData with QC metrics, prior to filtering
        after: Filtered AnnData
        cohort_key: obs column holding the cohort name

    Returns:
        DataFrame with one QCAudit row per cohort
    """
    records = []
    for cohort in pd.unique(before.obs[cohort_key]):
        obs_b = before.obs[before.obs[cohort_key] == cohort]
        obs_a = after.obs[after.obs[cohort_key] == cohort]
        b_cells = before[obs_b.index]
        a_cells = after[obs_a.index]
        genes_before = int(np.count_nonzero(np.asarray((b_cells.X > 0).sum(axis=0))))
        genes_after = int(np.count_nonzero(np.asarray((a_cells.X > 0).sum(axis=0))))
        records.append(
            QCAudit(
                cohort=str(cohort),
                cells_before=len(obs_b),
                cells_after=len(obs_a),
                genes_before=genes_before,
                genes_after=genes_after,
                median_features_before=float(obs_b["n_genes_by_counts"].median()),
                median_features_after=float(obs_a["n_genes_by_counts"].median()),
                median_percent_mt_before=float(obs_b["percent_mt"].median()),
                median_percent_mt_after=float(obs_a["percent_mt"].median()),
            )
        )
    return pd.DataFrame([asdict(r) for r in records])
