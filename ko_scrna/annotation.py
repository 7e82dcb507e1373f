#!/usr/bin/env python3
"""
Cell type annotation utilities for the WT vs KO single-cell RNA-seq pipeline
Handles the reference annotator interface, a marker-score annotator and
the transfer of predictions onto the dataset
"""

import json

import numpy as np
import pandas as pd
import scanpy as sc
from typing import Protocol

from ko_scrna.errors import DataError

PREDICTION_COLUMNS = [
    "predicted_class",
    "predicted_subclass",
    "prediction_score",
    "ref_umap_1",
    "ref_umap_2",
]


class ReferenceAnnotator(Protocol):
    """Anything that maps cells to reference labels

    ``annotate`` receives the processed dataset and returns one row per
    cell (indexed by cell name) with PREDICTION_COLUMNS.
    """

    def annotate(self, adata) -> pd.DataFrame:
        ...


def _score_sets(adata, marker_sets, seed):
    """Module score per marker set; sets without detected genes are dropped"""
    scores = {}
    n_vars = adata.n_vars
    for label, genes in marker_sets.items():
        present = [g for g in genes if g in adata.var_names]
        if not present:
            print(f"  No markers of {label} detected, not scored")
            continue
        scored = sc.tl.score_genes(
            adata,
            gene_list=present,
            ctrl_size=max(1, min(50, n_vars - len(present))),
            random_state=seed,
            copy=True,
        )
        scores[label] = scored.obs["score"].to_numpy()
    return pd.DataFrame(scores, index=adata.obs_names)


def _best_two(scores):
    values = scores.to_numpy()
    labels = scores.columns.to_numpy()
    top = np.argmax(values, axis=1)
    best = values[np.arange(values.shape[0]), top]
    if values.shape[1] > 1:
        second = np.partition(values, -2, axis=1)[:, -2]
    else:
        second = np.zeros_like(best)
    return labels[top], best - second


class MarkerScoreAnnotator:
    """Two-stage marker module score annotator

    Stage 1 assigns every cell its best-scoring class. Stage 2 scores the
    subclasses of each class within that class only, so a class with many
    subclasses does not outvote the others. prediction_score is the gap
    between the best and second-best class score.

    Args:
        class_markers: Dict class -> marker genes
        subclass_markers: Dict class -> {subclass: marker genes}
        margin: Score gap below which the call is flagged low confidence
        seed: Seed for control gene sampling
    """

    def __init__(self, class_markers, subclass_markers=None, margin=0.05, seed=42):
        if not class_markers:
            raise DataError("at least one class with markers is required", stage="annotation")
        self.class_markers = dict(class_markers)
        self.subclass_markers = dict(subclass_markers or {})
        self.margin = margin
        self.seed = seed

    @classmethod
    def from_json(cls, path, **kwargs):
        """Build from {"classes": {...}, "subclasses": {class: {...}}}"""
        with open(path) as f:
            table = json.load(f)
        return cls(table["classes"], table.get("subclasses"), **kwargs)

    def annotate(self, adata):
        print("Stage 1: Assigning classes...")
        class_scores = _score_sets(adata, self.class_markers, self.seed)
        if class_scores.empty:
            raise DataError("no class marker is detected in the dataset", stage="annotation")
        classes, gap = _best_two(class_scores)
        subclasses = classes.astype(object).copy()

        print("Stage 2: Refining subclasses...")
        for label in np.unique(classes):
            markers = self.subclass_markers.get(label)
            mask = classes == label
            if not markers:
                continue
            sub_scores = _score_sets(adata, markers, self.seed)
            if sub_scores.empty:
                continue
            winners, _ = _best_two(sub_scores[mask])
            subclasses[mask] = winners
            print(f"  {label}: {int(mask.sum())} cells over {sub_scores.shape[1]} subclasses")

        if "X_umap" in adata.obsm:
            coords = np.asarray(adata.obsm["X_umap"])[:, :2]
        elif "X_pca" in adata.obsm:
            coords = np.asarray(adata.obsm["X_pca"])[:, :2]
        else:
            raise DataError("no embedding to place cells on", stage="annotation")

        confident = gap >= self.margin
        print(f"  High confidence: {int(confident.sum())} of {len(confident)} cells")
        return pd.DataFrame(
            {
                "predicted_class": classes.astype(str),
                "predicted_subclass": subclasses.astype(str),
                "prediction_score": gap.astype(float),
                "ref_umap_1": coords[:, 0],
                "ref_umap_2": coords[:, 1],
                "annotation_confidence": np.where(confident, "high", "low"),
            },
            index=adata.obs_names.copy(),
        )


def _validate_predictions(predictions, adata):
    if not isinstance(predictions, pd.DataFrame):
        raise DataError("annotator must return a DataFrame", stage="annotation")
    missing = [c for c in PREDICTION_COLUMNS if c not in predictions]
    if missing:
        raise DataError(f"annotator output lacks columns {missing}", stage="annotation")
    if predictions.index.has_duplicates:
        raise DataError("annotator output has duplicated cells", stage="annotation")
    absent = adata.obs_names.difference(predictions.index)
    if len(absent):
        raise DataError(
            f"annotator output misses {len(absent)} cells, e.g. {absent[:3].tolist()}",
            stage="annotation",
        )
    predictions = predictions.loc[adata.obs_names]
    if predictions[["predicted_class", "predicted_subclass"]].isna().any().any():
        raise DataError("annotator output has missing labels", stage="annotation")
    numeric = predictions[["prediction_score", "ref_umap_1", "ref_umap_2"]]
    try:
        numeric = numeric.astype(float)
    except (TypeError, ValueError) as err:
        raise DataError(f"non-numeric annotator scores: {err}", stage="annotation") from err
    if not np.all(np.isfinite(numeric.to_numpy())):
        raise DataError("annotator scores or coordinates are not finite", stage="annotation")
    return predictions


def apply_annotation(adata, annotator, label_merge=None):
    """Annotate cells and merge configured subclass labels

    Args:
        adata: Processed AnnData
        annotator: ReferenceAnnotator
        label_merge: Dict subclass -> replacement subclass

    Returns:
        New AnnData with prediction columns in obs and the reference
        coordinates in ``obsm["X_ref_umap"]``
    """
    print("Annotating cells...")
    predictions = _validate_predictions(annotator.annotate(adata), adata)

    out = adata.copy()
    for col in predictions.columns:
        out.obs[col] = predictions[col].to_numpy()
    out.obs["predicted_class"] = out.obs["predicted_class"].astype(str)
    out.obs["predicted_subclass"] = out.obs["predicted_subclass"].astype(str)
    if label_merge:
        out.obs["predicted_subclass"] = out.obs["predicted_subclass"].replace(label_merge)
        print(f"  Merged labels: {label_merge}")
    out.obsm["X_ref_umap"] = predictions[["ref_umap_1", "ref_umap_2"]].to_numpy(dtype=float)

    print("\nFinal class distribution:")
    for label, count in out.obs["predicted_class"].value_counts().items():
        print(f"  {label}: {count:,}")
    return out


def subset_subpopulation(adata, key="predicted_class", values=None):
    """Cells whose ``key`` label is in ``values`` (all cells when None)"""
    if values is None:
        return adata.copy()
    if key not in adata.obs:
        raise DataError(f"obs has no '{key}' column", stage="annotation")
    if isinstance(values, str):
        values = [values]
    mask = adata.obs[key].astype(str).isin([str(v) for v in values]).to_numpy()
    if not mask.any():
        raise DataError(f"no cells with {key} in {list(values)}", stage="annotation")
    print(f"Selected {int(mask.sum())} cells with {key} in {list(values)}")
    return adata[mask].copy()
