#!/usr/bin/env python3
"""
Analysis parameters for the WT vs KO single-cell RNA-seq pipeline

This file centralizes all thresholds used in the pipeline.
Modify these values (or pass a JSON override file to the driver) to
adjust stringency.
"""

import copy
import json
from pathlib import Path

from ko_scrna.errors import ParameterError

# Every randomized step derives its seed from this value
SEED = 42

# Genotype labels and the order used for fold-changes (KO over WT)
COHORTS = {
    "control": "WT",
    "knockout": "KO",
}

# Cell-level filters
CELL_FILTERS = {
    "min_features": 400,  # Keep cells with strictly more detected genes
    "max_mt_pct": 5,  # Keep cells with strictly lower mitochondrial %
}

# Gene-level filters, applied once per cohort when the matrix is built
GENE_FILTERS = {
    "min_cells": 3,  # Minimum cells expressing a gene
}

# Mitochondrial and ribosomal gene patterns (mouse symbols)
GENE_PATTERNS = {
    "mt_pattern": r"^mt-",
    "ribo_pattern": r"^Rp[sl]",
}

NORMALIZATION = {
    "scale_factor": 1e4,  # Counts per cell after library-size normalization
    "n_variable_features": 2000,
    "scale_max": 10,  # Clip z-scores at this value
}

EMBEDDING = {
    "n_pcs": 30,  # Principal components computed
    "dims": 30,  # Principal components used for the kNN graph
    "k": 20,  # Neighbors in the clustering graph
    "resolution": 0.5,
    "umap_n_neighbors": 30,
    "umap_min_dist": 0.3,
}

# pK candidates: a few very small neighborhoods, then 0.01..0.30
PK_GRID = (0.0005, 0.001, 0.005) + tuple(round(0.01 * i, 2) for i in range(1, 31))

# Doublet detection parameters
DOUBLET_PARAMS = {
    "doublet_rate": 0.05,  # Expected doublet rate before homotypic adjustment
    "pN": 0.25,  # Synthetic doublets as a fraction of the merged dataset
    "sweep_pN": (0.25,),  # pN values visited by the sweep
    "pK_grid": PK_GRID,
    "n_pcs": 10,  # PCs of the merged real + synthetic embedding
    "n_variable_features": 2000,
    "min_cells": 100,  # Smaller cohorts cannot support the sweep
    "max_sweep_cells": 10000,  # Larger cohorts are subsampled for the sweep
    "reference_resolution": 0.5,  # Leiden resolution of the homotypic reference
    "n_jobs": 1,
}

# Differential expression parameters
DE_PARAMS = {
    "min_pct": 0.1,
    "logfc_threshold": 0.25,
    "test": "wilcox",  # "wilcox" or "t"
    "pseudocount": 1.0,
    "correction": "bonferroni",
    "min_cells_per_group": 3,
    "genotype_key": "genotype",
    "groupby": "predicted_subclass",
    # Restrict the genotype comparison to one annotated population
    "subpopulation_key": "predicted_class",
    "subpopulation": None,  # e.g. ["Glutamatergic"]; None = all cells
}

# Rank-based enrichment parameters
GSEA_PARAMS = {
    "p_cutoff": 0.05,
    "min_size": 50,
    "max_size": 500,
    "n_permutations": 1000,
    "weight": 1.0,
    "rank_by": "avg_log2FC",
    "gene_set_library": "KEGG_2021_Human",
    "n_jobs": 1,
}

# Annotation subclasses merged into one label, e.g. {"L4/5 IT": "L2/3 IT"}
LABEL_MERGE = {}


def default_params():
    """Return a deep copy of the default parameter set"""
    return {
        "seed": SEED,
        "cohorts": copy.deepcopy(COHORTS),
        "cell_filters": copy.deepcopy(CELL_FILTERS),
        "gene_filters": copy.deepcopy(GENE_FILTERS),
        "gene_patterns": copy.deepcopy(GENE_PATTERNS),
        "normalization": copy.deepcopy(NORMALIZATION),
        "embedding": copy.deepcopy(EMBEDDING),
        "doublet": copy.deepcopy(DOUBLET_PARAMS),
        "de": copy.deepcopy(DE_PARAMS),
        "gsea": copy.deepcopy(GSEA_PARAMS),
        "label_merge": copy.deepcopy(LABEL_MERGE),
    }


def _merge(base, overrides):
    for key, value in overrides.items():
        if key not in base:
            raise ParameterError(f"Unknown parameter: {key}", stage="config")
        if isinstance(base[key], dict) and isinstance(value, dict) and key != "label_merge":
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def build_params(overrides=None):
    """Merge overrides onto the defaults and validate the result

    Args:
        overrides: Nested dict, or path to a JSON file with the same layout

    Returns:
        Validated parameter dict
    """
    params = default_params()
    if overrides is None:
        return params
    if isinstance(overrides, (str, Path)):
        with open(overrides) as f:
            overrides = json.load(f)
    _merge(params, overrides)
    validate_params(params)
    return params


def get_params_summary(params=None):
    """Return a formatted summary of current parameter settings"""
    params = params or default_params()
    cf = params["cell_filters"]
    dp = params["doublet"]
    de = params["de"]
    gs = params["gsea"]
    summary = [
        "=== Pipeline Settings ===",
        f"\nSeed: {params['seed']}",
        "\nCell-level filters:",
        f"  - Genes per cell: > {cf['min_features']}",
        f"  - Max mitochondrial %: < {cf['max_mt_pct']}%",
        "\nGene-level filters:",
        f"  - Min cells expressing: {params['gene_filters']['min_cells']}",
        "\nDoublet detection:",
        f"  - Expected rate: {dp['doublet_rate']*100}%",
        f"  - pN: {dp['pN']}, pK candidates: {len(dp['pK_grid'])}",
        "\nDifferential expression:",
        f"  - Test: {de['test']}, min.pct {de['min_pct']}, logFC {de['logfc_threshold']}",
        "\nEnrichment:",
        f"  - Set size: {gs['min_size']}-{gs['max_size']}, p < {gs['p_cutoff']}",
    ]
    if params["label_merge"]:
        summary.append(f"\nLabel merges: {params['label_merge']}")
    return "\n".join(summary)


def validate_params(params=None):
    """Validate that parameters make sense"""
    params = params or default_params()
    errors = []

    cf = params["cell_filters"]
    if cf["min_features"] < 0:
        errors.append("min_features must be non-negative")
    if not 0 < cf["max_mt_pct"] <= 100:
        errors.append("max_mt_pct must be in (0, 100]")

    if params["gene_filters"]["min_cells"] < 0:
        errors.append("min_cells must be non-negative")

    norm = params["normalization"]
    if norm["scale_factor"] <= 0:
        errors.append("scale_factor must be positive")
    if norm["n_variable_features"] < 1:
        errors.append("n_variable_features must be at least 1")

    emb = params["embedding"]
    if emb["resolution"] <= 0:
        errors.append("resolution must be positive")
    if emb["dims"] > emb["n_pcs"]:
        errors.append("dims cannot exceed n_pcs")
    if emb["k"] < 2 or emb["umap_n_neighbors"] < 2:
        errors.append("neighbor counts must be at least 2")
    if emb["umap_min_dist"] < 0:
        errors.append("umap_min_dist must be non-negative")

    dp = params["doublet"]
    if not 0 < dp["doublet_rate"] < 1:
        errors.append("doublet_rate must be between 0 and 1")
    pns = list(dp["sweep_pN"]) + [dp["pN"]]
    if any(not 0 < pn < 1 for pn in pns):
        errors.append("pN values must be between 0 and 1")
    if not dp["pK_grid"] or any(not 0 < pk <= 0.3 for pk in dp["pK_grid"]):
        errors.append("pK_grid must be non-empty with values in (0, 0.3]")
    if dp["reference_resolution"] <= 0:
        errors.append("reference_resolution must be positive")

    de = params["de"]
    if not 0 <= de["min_pct"] <= 1:
        errors.append("min_pct must be between 0 and 1")
    if de["logfc_threshold"] < 0:
        errors.append("logfc_threshold must be non-negative")
    if de["test"] not in ("wilcox", "t"):
        errors.append("test must be 'wilcox' or 't'")
    if de["pseudocount"] <= 0:
        errors.append("pseudocount must be positive")

    gs = params["gsea"]
    if not 0 < gs["p_cutoff"] <= 1:
        errors.append("p_cutoff must be in (0, 1]")
    if gs["min_size"] < 1 or gs["min_size"] > gs["max_size"]:
        errors.append("gene set size bounds must satisfy 1 <= min_size <= max_size")
    if gs["n_permutations"] < 1:
        errors.append("n_permutations must be at least 1")

    if errors:
        raise ParameterError(
            "Parameter validation failed:\n" + "\n".join(errors), stage="config"
        )

    return True


# Run validation on import
validate_params()
