#!/usr/bin/env python3
"""
WT vs KO single-cell RNA-seq analysis

This script performs:
1. Loading of both cohorts (10x directories or CellBender .h5 files)
2. Quality control and per-cohort doublet detection
3. Normalization, dimensionality reduction and clustering
4. Cell type annotation from a marker table
5. KO vs WT differential expression and pathway enrichment

python ko_scrna_pipeline.py --wt data/WT --ko data/KO --markers markers.json
"""

import warnings
import argparse
import sys
import matplotlib
import scanpy as sc
from pathlib import Path

from ko_scrna.annotation import MarkerScoreAnnotator
from ko_scrna.errors import PipelineError
from ko_scrna.pathway_analysis import BiomartOrthologMapper, DictSymbolMapper, load_gene_sets
from ko_scrna.pipeline import run_pipeline, write_outputs
from ko_scrna.pipeline_params import build_params

# Configure scanpy
sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")


def main(argv=None):
    parser = argparse.ArgumentParser(description="WT vs KO scRNA-seq QC, doublets, DE and enrichment")
    parser.add_argument("--wt", required=True, help="WT cohort: 10x directory or .h5 file")
    parser.add_argument("--ko", required=True, help="KO cohort: 10x directory or .h5 file")
    parser.add_argument("--out-dir", default="results", help="Directory for result tables (default: 'results')")
    parser.add_argument("--plots-dir", default=None, help="Directory to write plots to (optional)")
    parser.add_argument("--params", default=None, help="JSON file overriding default parameters")
    parser.add_argument("--markers", default=None, help="JSON marker table for cell type annotation")
    parser.add_argument(
        "--gene-sets",
        default=None,
        help="GMT file or Enrichr library name (default: the configured library)",
    )
    parser.add_argument(
        "--orthologs",
        default=None,
        help="CSV with 'mouse' and 'human' columns (default: query BioMart)",
    )
    parser.add_argument("--skip-enrichment", action="store_true", help="Stop after differential expression")
    parser.add_argument("--n-jobs", type=int, default=None, help="Threads for doublet detection and enrichment")
    args = parser.parse_args(argv)

    try:
        params = build_params(args.params)
        if args.n_jobs is not None:
            params["doublet"]["n_jobs"] = args.n_jobs
            params["gsea"]["n_jobs"] = args.n_jobs
        control = params["cohorts"]["control"]
        knockout = params["cohorts"]["knockout"]

        plots_dir = None
        if args.plots_dir:
            plots_dir = Path(args.plots_dir)
            plots_dir.mkdir(parents=True, exist_ok=True)
            # Save-only mode
            matplotlib.use("Agg")
            print(f"Plots will be saved to: {plots_dir.absolute()}")

        annotator = None
        if args.markers:
            annotator = MarkerScoreAnnotator.from_json(args.markers, seed=params["seed"])

        gene_sets = None
        mapper = None
        if not args.skip_enrichment:
            gene_sets = load_gene_sets(args.gene_sets or params["gsea"]["gene_set_library"])
            if args.orthologs:
                mapper = DictSymbolMapper.from_csv(args.orthologs)
            else:
                mapper = BiomartOrthologMapper()

        result = run_pipeline(
            {control: args.wt, knockout: args.ko},
            params=params,
            annotator=annotator,
            gene_sets=gene_sets,
            mapper=mapper,
            plots_dir=plots_dir,
        )
        write_outputs(result, args.out_dir)
    except PipelineError as err:
        print(f"Pipeline failed: {err}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
