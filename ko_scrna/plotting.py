#!/usr/bin/env python3
"""
Diagnostic plots for the WT vs KO single-cell RNA-seq pipeline

Every function saves into ``save_dir`` when given and shows the figure
otherwise.
"""

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns

from ko_scrna.qc_utils import QC_COLUMNS


def _finish(fig, save_dir, filename):
    plt.tight_layout()
    if save_dir:
        save_dir = Path(save_dir)
        save_dir.mkdir(parents=True, exist_ok=True)
        path = save_dir / filename
        fig.savefig(path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {path}")
        plt.close(fig)
        return path
    plt.show()
    return None


def plot_qc_metrics(adata, groupby="cohort", save_dir=None, filename="qc_violin_plots.png"):
    """Violin plots of the QC metrics per cohort

    Args:
        adata: AnnData with QC metrics in obs
        groupby: obs column used on the x axis
        save_dir: Directory to save the plot (optional)
    """
    print("Plotting QC metrics...")
    obs = adata.obs[[groupby] + QC_COLUMNS].copy()
    obs[groupby] = obs[groupby].astype(str)

    fig, axes = plt.subplots(1, len(QC_COLUMNS), figsize=(4 * len(QC_COLUMNS), 4))
    for ax, metric in zip(axes, QC_COLUMNS):
        sns.violinplot(data=obs, x=groupby, y=metric, ax=ax, cut=0, inner=None, color="lightgray")
        sns.stripplot(data=obs, x=groupby, y=metric, ax=ax, size=1, alpha=0.3, color="black")
        ax.set_title(metric)
        ax.set_xlabel("")
    return _finish(fig, save_dir, filename)


def plot_pk_sweep(summaries, save_dir=None, filename="pk_sweep.png"):
    """BCmetric against pK for each cohort, optimal pK marked

    Args:
        summaries: Dict cohort -> sweep summary DataFrame
    """
    fig, ax = plt.subplots(figsize=(8, 5))
    for cohort, summary in summaries.items():
        if summary.empty:
            continue
        ax.plot(summary["pK"], summary["bc_metric"], marker="o", markersize=3, label=cohort)
        best = summary.loc[summary["bc_metric"].idxmax()]
        ax.axvline(best["pK"], linestyle="--", linewidth=1, alpha=0.5)
    ax.set_xlabel("pK")
    ax.set_ylabel("BCmetric")
    ax.set_title("pK sweep")
    ax.legend(loc="best")
    ax.grid(alpha=0.3)
    return _finish(fig, save_dir, filename)


def plot_doublet_scores(adata, cohort_key="cohort", save_dir=None, filename="doublet_scores.png"):
    """pANN distribution per cohort, colored by doublet call"""
    scored = adata.obs[adata.obs["doublet_class"] != "Unscored"]
    if scored.empty:
        print("No scored cells, skipping doublet score plot")
        return None
    cohorts = sorted(scored[cohort_key].astype(str).unique())

    fig, axes = plt.subplots(1, len(cohorts), figsize=(5 * len(cohorts), 4), squeeze=False)
    for ax, cohort in zip(axes[0], cohorts):
        data = scored[scored[cohort_key].astype(str) == cohort]
        sns.histplot(
            data=data,
            x="pANN",
            hue="doublet_class",
            hue_order=["Singlet", "Doublet"],
            palette={"Singlet": "lightgray", "Doublet": "red"},
            bins=50,
            ax=ax,
        )
        ax.set_title(f"{cohort} ({int((data['doublet_class'] == 'Doublet').sum())} doublets)")
    return _finish(fig, save_dir, filename)


def plot_embedding(adata, colors=("predicted_class", "genotype"), save_dir=None, filename="umap.png"):
    """UMAP colored by annotation and genotype"""
    if "X_umap" not in adata.obsm:
        print("No UMAP found, skipping embedding plot")
        return None
    colors = [c for c in colors if c in adata.obs]
    fig, axes = plt.subplots(1, len(colors), figsize=(6 * len(colors), 5), squeeze=False)
    for ax, color in zip(axes[0], colors):
        sc.pl.umap(adata, color=color, ax=ax, show=False, title=color)
    return _finish(fig, save_dir, filename)


def plot_volcano(de_table, title, fc_threshold=0.25, pval_threshold=0.05, save_dir=None, filename=None):
    """Volcano plot of one DE comparison"""
    if de_table.empty:
        print(f"No results for {title}")
        return None
    table = de_table.copy()
    table["neg_log10_pval"] = -np.log10(table["p_val"].astype(float) + 1e-300)
    significant = table["p_val_adj"].astype(float) < pval_threshold
    up = significant & (table["avg_log2FC"] > fc_threshold)
    down = significant & (table["avg_log2FC"] < -fc_threshold)

    fig, ax = plt.subplots(figsize=(8, 6))
    rest = table[~(up | down)]
    ax.scatter(rest["avg_log2FC"], rest["neg_log10_pval"], c="gray", alpha=0.5, s=10, label="Not significant")
    ax.scatter(
        table.loc[up, "avg_log2FC"], table.loc[up, "neg_log10_pval"],
        c="red", alpha=0.7, s=15, label=f"Up (n={int(up.sum())})",
    )
    ax.scatter(
        table.loc[down, "avg_log2FC"], table.loc[down, "neg_log10_pval"],
        c="blue", alpha=0.7, s=15, label=f"Down (n={int(down.sum())})",
    )
    ax.axvline(fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axvline(-fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.set_xlabel("avg_log2FC")
    ax.set_ylabel("-Log10(p_val)")
    ax.set_title(title)
    ax.legend(loc="best")
    ax.grid(alpha=0.3)
    filename = filename or f"volcano_{_safe_name(title)}.png"
    return _finish(fig, save_dir, filename)


def plot_enrichment(results, title="Enrichment", top_n=10, save_dir=None, filename="enrichment.png"):
    """Bar chart of the top pathways by |NES|"""
    if results.empty:
        print("No enriched pathways to plot")
        return None
    top = results.reindex(results["nes"].abs().sort_values(ascending=False).index).head(top_n)
    top = top.iloc[::-1]

    fig, ax = plt.subplots(figsize=(10, max(3, 0.4 * len(top))))
    colors = ["red" if x > 0 else "blue" for x in top["nes"]]
    ax.barh(range(len(top)), top["nes"], color=colors, alpha=0.7)
    ax.set_yticks(range(len(top)))
    ax.set_yticklabels(top["pathway"])
    ax.set_xlabel("Normalized Enrichment Score (NES)")
    ax.set_title(title)
    ax.axvline(x=0, color="black", linestyle="--", alpha=0.5)
    return _finish(fig, save_dir, filename)


def _safe_name(text):
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in str(text))


def plot_summary_counts(table, x, y, title, save_dir=None, filename="counts.png"):
    """Bar chart for per-cohort audit counts"""
    fig, ax = plt.subplots(figsize=(6, 4))
    sns.barplot(data=pd.DataFrame(table), x=x, y=y, ax=ax, color="steelblue")
    ax.set_title(title)
    return _finish(fig, save_dir, filename)
