#!/usr/bin/env python3
"""
WT vs KO pipeline: QC, per-cohort doublet removal, clustering, annotation,
differential expression and pathway enrichment

Each stage returns new objects; a failing stage leaves its inputs intact
and its error names the stage and cohort it belongs to.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import anndata
import pandas as pd

from ko_scrna.annotation import apply_annotation, subset_subpopulation
from ko_scrna.data_loader import build_cohort, load_cohort, merge_cohorts
from ko_scrna.differential_expression import DE_COLUMNS, compare_by_group, compare_genotypes
from ko_scrna.doublet_detection import detect_doublets, remove_doublets
from ko_scrna.errors import DataError, PipelineError, StatisticalDegeneracy
from ko_scrna.pathway_analysis import EnrichmentReport, enrich, map_ranked_genes, rank_genes
from ko_scrna.pipeline_params import default_params, get_params_summary, validate_params
from ko_scrna.plotting import (
    plot_doublet_scores,
    plot_embedding,
    plot_enrichment,
    plot_pk_sweep,
    plot_qc_metrics,
    plot_summary_counts,
    plot_volcano,
)
from ko_scrna.processing import run_standard_workflow
from ko_scrna.qc_utils import calculate_qc_metrics, filter_cells, qc_audit_table

ALL_CELLS = "all"


@dataclass
class PipelineResult:
    """Everything a run produces"""

    adata: anndata.AnnData
    qc_audit: pd.DataFrame
    doublet_audit: pd.DataFrame
    sweeps: Dict[str, pd.DataFrame]
    de_by_group: pd.DataFrame
    de_skipped: pd.DataFrame
    de_genotype: pd.DataFrame
    qc_before: Optional[anndata.AnnData] = None
    ranked: Optional[pd.Series] = None
    enrichment: Optional[EnrichmentReport] = None
    params: dict = field(default_factory=dict)
    enrichment_skipped_reason: str = ""


def run_stage(name, func, *args, unit=None, **kwargs):
    """Call ``func`` and tag any pipeline error with the stage and unit"""
    try:
        return func(*args, **kwargs)
    except PipelineError as err:
        if err.stage is None:
            err.stage = name
        if err.cohort is None and unit is not None:
            err.cohort = unit
        raise


def _load(cohorts, params):
    min_cells = params["gene_filters"]["min_cells"]
    stores = []
    for cohort, source in cohorts.items():
        if isinstance(source, anndata.AnnData):
            store = run_stage("load", build_cohort, source, cohort, cohort, min_cells=min_cells, unit=cohort)
        else:
            store = run_stage("load", load_cohort, source, cohort, cohort, min_cells=min_cells, unit=cohort)
        stores.append(store)
    return stores


def _qc(stores, params):
    patterns = params["gene_patterns"]
    filters = params["cell_filters"]
    before, after = [], []
    for store in stores:
        cohort = str(store.obs["cohort"].iloc[0])
        print(f"\n--- QC: {cohort} ---")
        with_metrics = run_stage("qc", calculate_qc_metrics, store, unit=cohort, **patterns)
        before.append(with_metrics)
        after.append(
            run_stage(
                "qc",
                filter_cells,
                with_metrics,
                min_features=filters["min_features"],
                max_mt_pct=filters["max_mt_pct"],
                cohort=cohort,
                unit=cohort,
            )
        )
    merged_before = merge_cohorts(before)
    merged_after = merge_cohorts(after)
    return merged_before, merged_after, qc_audit_table(merged_before, merged_after)


def _genotype_comparison(adata, params, ident_1, ident_2, **kwargs):
    """Global comparison, or None when a genotype has too few cells"""
    genotype_key = params["de"]["genotype_key"]
    try:
        table = run_stage("de", compare_genotypes, adata, genotype_key, ident_1, ident_2, **kwargs)
    except StatisticalDegeneracy as err:
        print(f"  Skipping {ident_1} vs {ident_2} over all cells: {err.message}")
        return None, err.message
    return table, None


def _differential_expression(adata, params):
    """Per-group, global and full-ranking DE

    Returns:
        (by_group, skipped, genotype, full); ``full`` is None when the
        global comparison was skipped, which is then a ``group="all"`` row
        of ``skipped``
    """
    de = params["de"]
    ident_1 = params["cohorts"]["knockout"]
    ident_2 = params["cohorts"]["control"]
    test_kwargs = {
        "min_pct": de["min_pct"],
        "logfc_threshold": de["logfc_threshold"],
        "test": de["test"],
        "pseudocount": de["pseudocount"],
        "correction": de["correction"],
    }

    if de["subpopulation"] is not None:
        adata = run_stage(
            "de", subset_subpopulation, adata, key=de["subpopulation_key"], values=de["subpopulation"]
        )

    groupby = de["groupby"] if de["groupby"] in adata.obs else "leiden"
    print(f"\nDE {ident_1} vs {ident_2} within each {groupby}")
    by_group, skipped = run_stage(
        "de",
        compare_by_group,
        adata,
        groupby,
        genotype_key=de["genotype_key"],
        ident_1=ident_1,
        ident_2=ident_2,
        min_cells_per_group=de["min_cells_per_group"],
        **test_kwargs,
    )

    genotype, reason = _genotype_comparison(adata, params, ident_1, ident_2, **test_kwargs)
    if genotype is None:
        labels = adata.obs[de["genotype_key"]].astype(str)
        row = pd.DataFrame(
            [
                {
                    "group": ALL_CELLS,
                    "n_cells_1": int((labels == ident_1).sum()),
                    "n_cells_2": int((labels == ident_2).sum()),
                    "reason": reason,
                }
            ]
        )
        skipped = pd.concat([skipped, row], ignore_index=True) if len(skipped) else row
        return by_group, skipped, pd.DataFrame(columns=DE_COLUMNS), None

    # Enrichment ranks every gene, not only those passing the DE filters
    full_kwargs = dict(test_kwargs, min_pct=0.0, logfc_threshold=0.0)
    full = run_stage(
        "de", compare_genotypes, adata, de["genotype_key"], ident_1, ident_2, **full_kwargs
    )
    return by_group, skipped, genotype, full


def run_pipeline(
    cohorts,
    params=None,
    annotator=None,
    gene_sets=None,
    mapper=None,
    plots_dir=None,
):
    """Run every stage on a set of cohorts

    Args:
        cohorts: Dict cohort/genotype label -> 10x directory, .h5 file or
            raw-count AnnData
        params: Parameter dict (defaults to ``default_params()``)
        annotator: ReferenceAnnotator; annotation is skipped when None
        gene_sets: Dict pathway -> genes; enrichment is skipped when None
        mapper: Symbol mapper into the gene set namespace (optional)
        plots_dir: Directory for diagnostic plots (optional)

    Returns:
        PipelineResult
    """
    params = params or default_params()
    validate_params(params)
    expected = set(params["cohorts"].values())
    if set(cohorts) != expected:
        raise DataError(
            f"cohorts {sorted(cohorts)} do not match configured genotypes {sorted(expected)}",
            stage="config",
        )
    seed = params["seed"]
    print("Starting WT vs KO analysis pipeline...")
    print("\n" + get_params_summary(params) + "\n")

    stores = _load(cohorts, params)

    qc_before, qc_after, qc_audit = _qc(stores, params)
    print("\nQC summary:")
    print(qc_audit[["cohort", "cells_before", "cells_after", "genes_before", "genes_after"]])

    scored, doublet_audit, sweeps = run_stage("doublet", detect_doublets, qc_after, params)
    singlets = run_stage("doublet", remove_doublets, scored)

    print("\nProcessing singlets...")
    adata = run_stage(
        "clustering",
        run_standard_workflow,
        singlets,
        params["normalization"],
        params["embedding"],
        seed=seed,
    )

    if annotator is not None:
        adata = run_stage("annotation", apply_annotation, adata, annotator, params["label_merge"])

    by_group, de_skipped, de_genotype, de_full = _differential_expression(adata, params)

    ranked = None
    report = None
    enrichment_skipped_reason = ""
    if gene_sets is not None and de_full is None:
        enrichment_skipped_reason = "no genome-wide ranking: " + de_skipped["reason"].iloc[-1]
        print(f"\nSkipping enrichment, {enrichment_skipped_reason}")
    elif gene_sets is not None:
        gs = params["gsea"]
        ranked = run_stage("enrichment", rank_genes, de_full, score_col=gs["rank_by"])
        n_unmapped = 0
        if mapper is not None:
            ranked, n_unmapped = run_stage("enrichment", map_ranked_genes, ranked, mapper)
        report = run_stage(
            "enrichment",
            enrich,
            ranked,
            gene_sets,
            p_cutoff=gs["p_cutoff"],
            min_size=gs["min_size"],
            max_size=gs["max_size"],
            n_permutations=gs["n_permutations"],
            seed=seed,
            weight=gs["weight"],
            n_jobs=gs["n_jobs"],
        )
        report.n_unmapped = n_unmapped

    if plots_dir:
        print("\nSaving plots...")
        plot_qc_metrics(qc_before, save_dir=plots_dir, filename="qc_before.png")
        plot_qc_metrics(qc_after, save_dir=plots_dir, filename="qc_after.png")
        plot_summary_counts(qc_audit, "cohort", "cells_after", "Cells after QC", save_dir=plots_dir, filename="qc_cells.png")
        plot_pk_sweep(sweeps, save_dir=plots_dir)
        plot_doublet_scores(scored, save_dir=plots_dir)
        plot_embedding(adata, save_dir=plots_dir)
        contrast = f"{params['cohorts']['knockout']} vs {params['cohorts']['control']}"
        plot_volcano(de_genotype, contrast, save_dir=plots_dir)
        for group, table in by_group.groupby("group"):
            plot_volcano(table, f"{contrast} {group}", save_dir=plots_dir)
        if report is not None:
            plot_enrichment(report.results, save_dir=plots_dir)

    print("Analysis complete!")
    return PipelineResult(
        adata=adata,
        qc_audit=qc_audit,
        doublet_audit=doublet_audit,
        sweeps=sweeps,
        de_by_group=by_group,
        de_skipped=de_skipped,
        de_genotype=de_genotype,
        qc_before=qc_before,
        ranked=ranked,
        enrichment=report,
        params=params,
        enrichment_skipped_reason=enrichment_skipped_reason,
    )


def write_outputs(result, out_dir, write_h5ad=True):
    """Write every result table (and the processed data) to ``out_dir``"""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    tables = {
        "qc_audit.csv": result.qc_audit,
        "doublet_audit.csv": result.doublet_audit,
        "de_by_group.csv": result.de_by_group,
        "de_skipped_groups.csv": result.de_skipped,
        "de_genotype.csv": result.de_genotype,
        "cell_metadata.csv": result.adata.obs,
    }
    if result.qc_before is not None:
        tables["cell_qc_before.csv"] = result.qc_before.obs
    for cohort, summary in result.sweeps.items():
        tables[f"pk_sweep_{cohort}.csv"] = summary
    if result.ranked is not None:
        tables["ranked_genes.csv"] = result.ranked.rename_axis("gene").reset_index()
    if result.enrichment is not None:
        tables["enrichment_results.csv"] = result.enrichment.results
        tables["enrichment_tested.csv"] = result.enrichment.tested
        tables["enrichment_skipped.csv"] = result.enrichment.skipped

    for filename, table in tables.items():
        index = filename in ("cell_metadata.csv", "cell_qc_before.csv")
        table.to_csv(out_dir / filename, index=index)
        print(f"  Saved: {out_dir / filename}")

    if write_h5ad:
        path = out_dir / "processed.h5ad"
        result.adata.write(path)
        print(f"Saved processed data to {path}")
    return out_dir
