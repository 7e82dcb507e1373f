#!/usr/bin/env python3
"""
Differential expression utilities for the WT vs KO single-cell RNA-seq pipeline
Cell-level two-group tests on log-normalized expression

Per gene:
- pct.1 / pct.2: fraction of cells with expression > 0 in each group
- avg_log2FC = log2(mean(expm1(x1)) + eps) - log2(mean(expm1(x2)) + eps)
- Genes expressed in neither group above min_pct, or with
  |avg_log2FC| < logfc_threshold, are not tested
- Wilcoxon rank-sum (or Welch t) p-value, corrected across tested genes
"""

from dataclasses import dataclass, fields

import numpy as np
import pandas as pd
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from ko_scrna.errors import DataError, ParameterError, StatisticalDegeneracy

MIN_CELLS_PER_GROUP = 3


@dataclass
class DEResult:
    """One tested gene"""

    gene: str
    p_val: float
    avg_log2FC: float
    pct_1: float
    pct_2: float
    p_val_adj: float


DE_COLUMNS = [f.name for f in fields(DEResult)]


def de_records(table):
    """Rows of a DE table as DEResult records"""
    return [DEResult(**row) for row in table[DE_COLUMNS].to_dict("records")]


def _cell_positions(adata, cells, name):
    cells = pd.Index(cells)
    if cells.dtype == bool:
        if len(cells) != adata.n_obs:
            raise DataError(f"{name} mask has {len(cells)} entries for {adata.n_obs} cells")
        return np.flatnonzero(cells.to_numpy())
    if cells.has_duplicates:
        dupes = cells[cells.duplicated()].unique()[:5].tolist()
        raise DataError(f"{name} lists cells more than once, e.g. {dupes}", stage="de")
    positions = adata.obs_names.get_indexer(cells)
    if np.any(positions < 0):
        missing = cells[positions < 0][:5].tolist()
        raise DataError(f"{name} contains unknown cells, e.g. {missing}", stage="de")
    return positions


def _check_de_params(min_pct, logfc_threshold, test, pseudocount):
    if not 0 <= min_pct <= 1:
        raise ParameterError(f"min_pct must be in [0, 1], got {min_pct}", stage="de")
    if logfc_threshold < 0:
        raise ParameterError(
            f"logfc_threshold must be non-negative, got {logfc_threshold}", stage="de"
        )
    if test not in ("wilcox", "t"):
        raise ParameterError(f"unknown test '{test}'", stage="de")
    if pseudocount <= 0:
        raise ParameterError(f"pseudocount must be positive, got {pseudocount}", stage="de")


def _group_summary(X):
    """Per-gene detection fraction and mean of expm1 for one group

    Fractions are integer counts over the group size, so they stay in [0, 1]
    and a gene detected in exactly min_pct of the cells passes the filter.
    """
    n_cells = X.shape[0]
    if sparse.issparse(X):
        pct = np.asarray((X > 0).sum(axis=0)).ravel() / n_cells
        mean_expm1 = np.asarray(X.expm1().mean(axis=0)).ravel()
    else:
        pct = np.count_nonzero(X > 0, axis=0) / n_cells
        mean_expm1 = np.expm1(X).mean(axis=0)
    return pct, mean_expm1


def _dense(X):
    return X.toarray() if sparse.issparse(X) else np.asarray(X)


def _test_genes(X1, X2, test, chunk_size=1000):
    """Vectorized per-gene p-values, NaN (all ties / zero variance) -> 1"""
    n_genes = X1.shape[1]
    p_values = np.empty(n_genes, dtype=float)
    for start in range(0, n_genes, chunk_size):
        stop = min(start + chunk_size, n_genes)
        a = _dense(X1[:, start:stop]).astype(np.float64)
        b = _dense(X2[:, start:stop]).astype(np.float64)
        with np.errstate(divide="ignore", invalid="ignore"):
            if test == "wilcox":
                result = stats.mannwhitneyu(
                    a, b, use_continuity=True, alternative="two-sided", method="asymptotic", axis=0
                )
            else:
                result = stats.ttest_ind(a, b, equal_var=False, axis=0)
        p_values[start:stop] = np.asarray(result.pvalue, dtype=float)
    return np.where(np.isnan(p_values), 1.0, p_values)


def compare_groups(
    adata,
    group1_cells,
    group2_cells,
    min_pct=0.1,
    logfc_threshold=0.25,
    test="wilcox",
    pseudocount=1.0,
    correction="bonferroni",
):
    """Differential expression between two disjoint groups of cells

    Args:
        adata: AnnData with log-normalized expression in X
        group1_cells: Cell names (or boolean mask) of the first group
        group2_cells: Cell names (or boolean mask) of the second group
        min_pct: Test only genes detected in at least this fraction of
            cells of either group
        logfc_threshold: Test only genes with |avg_log2FC| at least this
        test: "wilcox" (rank-sum) or "t" (Welch)
        pseudocount: Added to group means before the log2
        correction: statsmodels multipletests method

    Returns:
        DataFrame with DE_COLUMNS, sorted by p_val then |avg_log2FC|
    """
    _check_de_params(min_pct, logfc_threshold, test, pseudocount)

    pos1 = _cell_positions(adata, group1_cells, "group1_cells")
    pos2 = _cell_positions(adata, group2_cells, "group2_cells")
    overlap = np.intersect1d(pos1, pos2)
    if overlap.size:
        raise DataError(f"{overlap.size} cells are in both groups", stage="de")
    for name, pos in (("group 1", pos1), ("group 2", pos2)):
        if pos.size < MIN_CELLS_PER_GROUP:
            raise StatisticalDegeneracy(
                f"{name} has {pos.size} cells; at least {MIN_CELLS_PER_GROUP} are needed",
                stage="de",
            )

    X = adata.X.tocsr() if sparse.issparse(adata.X) else np.asarray(adata.X)
    X1 = X[pos1]
    X2 = X[pos2]

    pct_1, mean_1 = _group_summary(X1)
    pct_2, mean_2 = _group_summary(X2)
    avg_log2fc = np.log2(mean_1 + pseudocount) - np.log2(mean_2 + pseudocount)

    keep = (np.maximum(pct_1, pct_2) >= min_pct) & (np.abs(avg_log2fc) >= logfc_threshold)
    genes = np.flatnonzero(keep)
    if genes.size == 0:
        print("  No genes pass the min_pct / logfc_threshold filters")
        return pd.DataFrame(columns=DE_COLUMNS)

    p_val = _test_genes(X1[:, genes], X2[:, genes], test)
    p_val_adj = multipletests(p_val, method=correction)[1]

    table = pd.DataFrame(
        {
            "gene": adata.var_names[genes].astype(str),
            "p_val": p_val,
            "avg_log2FC": avg_log2fc[genes],
            "pct_1": pct_1[genes],
            "pct_2": pct_2[genes],
            "p_val_adj": np.maximum(p_val_adj, p_val),
        }
    )
    table["_abs_fc"] = table["avg_log2FC"].abs()
    table = (
        table.sort_values(["p_val", "_abs_fc", "gene"], ascending=[True, False, True], kind="mergesort")
        .drop(columns="_abs_fc")
        .reset_index(drop=True)
    )
    return table[DE_COLUMNS]


def compare_genotypes(adata, genotype_key="genotype", ident_1="KO", ident_2="WT", **kwargs):
    """Global ident_1 vs ident_2 comparison"""
    if genotype_key not in adata.obs:
        raise DataError(f"obs has no '{genotype_key}' column", stage="de")
    labels = adata.obs[genotype_key].astype(str)
    print(f"Comparing {ident_1} vs {ident_2} over {adata.n_obs} cells")
    return compare_groups(
        adata,
        adata.obs_names[(labels == ident_1).to_numpy()],
        adata.obs_names[(labels == ident_2).to_numpy()],
        **kwargs,
    )


def compare_by_group(
    adata,
    groupby,
    genotype_key="genotype",
    ident_1="KO",
    ident_2="WT",
    min_cells_per_group=MIN_CELLS_PER_GROUP,
    **kwargs,
):
    """Run ident_1 vs ident_2 within each label of ``groupby``

    Groups with fewer than ``min_cells_per_group`` cells on either side are
    skipped and recorded.

    Returns:
        (DE table with a ``group`` column, DataFrame of skipped groups)
    """
    for key in (groupby, genotype_key):
        if key not in adata.obs:
            raise DataError(f"obs has no '{key}' column", stage="de")

    labels = adata.obs[groupby].astype(str)
    genotypes = adata.obs[genotype_key].astype(str)

    tables = []
    skipped = []
    for group in sorted(labels.unique()):
        in_group = labels == group
        cells_1 = adata.obs_names[(in_group & (genotypes == ident_1)).to_numpy()]
        cells_2 = adata.obs_names[(in_group & (genotypes == ident_2)).to_numpy()]
        if min(len(cells_1), len(cells_2)) < min_cells_per_group:
            print(f"  Skipping {group}: {len(cells_1)} {ident_1} vs {len(cells_2)} {ident_2} cells")
            skipped.append(
                {
                    "group": group,
                    "n_cells_1": len(cells_1),
                    "n_cells_2": len(cells_2),
                    "reason": f"fewer than {min_cells_per_group} cells in a group",
                }
            )
            continue

        print(f"  Testing {group} ({len(cells_1)} vs {len(cells_2)} cells)")
        try:
            table = compare_groups(adata, cells_1, cells_2, **kwargs)
        except StatisticalDegeneracy as err:
            skipped.append(
                {
                    "group": group,
                    "n_cells_1": len(cells_1),
                    "n_cells_2": len(cells_2),
                    "reason": err.message,
                }
            )
            continue
        table.insert(0, "group", group)
        tables.append(table)
        n_sig = int((table["p_val_adj"] < 0.05).sum())
        print(f"    {len(table)} genes tested, {n_sig} with p_val_adj < 0.05")

    results = (
        pd.concat(tables, ignore_index=True)
        if tables
        else pd.DataFrame(columns=["group"] + DE_COLUMNS)
    )
    skipped = pd.DataFrame(skipped, columns=["group", "n_cells_1", "n_cells_2", "reason"])
    return results, skipped
