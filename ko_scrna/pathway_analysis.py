#!/usr/bin/env python3
"""
Pathway analysis utilities for the WT vs KO single-cell RNA-seq pipeline
Handles ranked gene lists, ortholog mapping, gene set loading and
rank-based enrichment (weighted running-sum statistic with gene-label
permutations)
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Dict, List

import gseapy as gp
import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from ko_scrna.errors import DataError, ParameterError, StatisticalDegeneracy
from ko_scrna.processing import derive_seed


@dataclass
class EnrichmentResult:
    """Enrichment statistics for one gene set"""

    pathway: str
    set_size: int
    enrichment_score: float
    nes: float
    p_value: float
    p_adjust: float = np.nan
    leading_edge: List[str] = field(default_factory=list)


RESULT_COLUMNS = [f.name for f in fields(EnrichmentResult)]
SKIPPED_COLUMNS = ["pathway", "set_size", "reason"]


@dataclass
class EnrichmentReport:
    """Reported pathways, every tested pathway, and skipped sets"""

    results: pd.DataFrame
    tested: pd.DataFrame
    skipped: pd.DataFrame
    n_unmapped: int = 0


def _collapse_duplicates(scores):
    """Keep the entry with the largest |score| per gene"""
    if not scores.index.has_duplicates:
        return scores
    frame = pd.DataFrame({"gene": scores.index, "score": scores.to_numpy()})
    frame["abs"] = frame["score"].abs()
    frame = frame.sort_values(["gene", "abs"], ascending=[True, False], kind="mergesort")
    frame = frame.drop_duplicates("gene", keep="first")
    return pd.Series(frame["score"].to_numpy(), index=frame["gene"].to_numpy())


def _sort_ranked(scores):
    frame = pd.DataFrame({"gene": scores.index.astype(str), "score": scores.to_numpy()})
    frame = frame.sort_values(["score", "gene"], ascending=[False, True], kind="mergesort")
    return pd.Series(frame["score"].to_numpy(dtype=float), index=frame["gene"].to_numpy(), name="score")


def rank_genes(de_table, score_col="avg_log2FC"):
    """Ranked gene list from a DE table, descending by ``score_col``

    Ties are broken by gene name; duplicated genes keep the largest |score|.
    """
    for col in ("gene", score_col):
        if col not in de_table:
            raise DataError(f"DE table has no '{col}' column", stage="enrichment")
    table = de_table.dropna(subset=[score_col])
    scores = pd.Series(table[score_col].to_numpy(dtype=float), index=table["gene"].astype(str))
    return _sort_ranked(_collapse_duplicates(scores))


def validate_ranked(ranked):
    """Raise DataError unless ``ranked`` is unique, finite and non-increasing"""
    if not isinstance(ranked, pd.Series):
        raise DataError("ranked genes must be a pandas Series", stage="enrichment")
    if ranked.empty:
        raise DataError("ranked gene list is empty", stage="enrichment")
    values = ranked.to_numpy(dtype=float)
    if not np.all(np.isfinite(values)):
        raise DataError("ranked gene list has missing or infinite scores", stage="enrichment")
    if ranked.index.has_duplicates:
        raise DataError("ranked gene list has duplicated genes", stage="enrichment")
    if np.any(np.diff(values) > 0):
        raise DataError("ranked gene list is not sorted in descending order", stage="enrichment")


class DictSymbolMapper:
    """Static symbol -> identifier mapping"""

    def __init__(self, mapping):
        self.mapping = dict(mapping)

    @classmethod
    def from_csv(cls, path, source_col="mouse", target_col="human"):
        table = pd.read_csv(path).dropna(subset=[source_col, target_col])
        table = table.drop_duplicates(source_col, keep="first")
        return cls(zip(table[source_col].astype(str), table[target_col].astype(str)))

    def __call__(self, symbols):
        return {s: self.mapping[s] for s in symbols if s in self.mapping}


class BiomartOrthologMapper:
    """Mouse gene symbols to human orthologs through Ensembl BioMart"""

    def __init__(self, dataset="mmusculus_gene_ensembl"):
        self.dataset = dataset
        self._cache = {}

    def __call__(self, symbols):
        symbols = list(symbols)
        todo = [s for s in symbols if s not in self._cache]
        if todo:
            print(f"  Querying BioMart for {len(todo)} orthologs...")
            bm = gp.Biomart()
            table = bm.query(
                dataset=self.dataset,
                attributes=["external_gene_name", "hsapiens_homolog_associated_gene_name"],
                filters={"external_gene_name": todo},
            )
            table = table.dropna()
            table = table[table["hsapiens_homolog_associated_gene_name"].astype(str) != ""]
            table = table.sort_values(
                ["external_gene_name", "hsapiens_homolog_associated_gene_name"]
            ).drop_duplicates("external_gene_name")
            for mouse, human in zip(
                table["external_gene_name"], table["hsapiens_homolog_associated_gene_name"]
            ):
                self._cache[str(mouse)] = str(human)
            for s in todo:
                self._cache.setdefault(s, None)
        return {s: self._cache[s] for s in symbols if self._cache.get(s)}


def map_ranked_genes(ranked, mapper):
    """Translate a ranked list into the gene set namespace

    Unmapped genes are dropped; several genes mapping to one identifier
    keep the largest |score|.

    Returns:
        (ranked Series in the target namespace, number of dropped genes)
    """
    mapping = mapper(ranked.index.tolist())
    mapped = ranked[ranked.index.isin(list(mapping))]
    n_unmapped = len(ranked) - len(mapped)
    mapped = pd.Series(mapped.to_numpy(), index=[mapping[g] for g in mapped.index])
    mapped = _sort_ranked(_collapse_duplicates(mapped))
    print(f"  Mapped {len(mapped)} genes, dropped {n_unmapped} without a match")
    return mapped, n_unmapped


def load_gene_sets(source, organism="Human"):
    """Load gene sets from a GMT file or an Enrichr library name

    Returns:
        Dict pathway -> list of gene identifiers
    """
    path = Path(str(source))
    if path.suffix == ".gmt":
        if not path.exists():
            raise DataError(f"gene set file {path} not found", stage="enrichment")
        print(f"Loading gene sets from {path}")
        gene_sets = gp.read_gmt(str(path))
    else:
        print(f"Loading {source} (organism={organism})...")
        gene_sets = gp.get_library(name=str(source), organism=organism)
    print(f"  {len(gene_sets)} gene sets")
    return {name: list(genes) for name, genes in gene_sets.items()}


def _running_sum_extremes(positions, weights, n_genes):
    """Peak and trough of the running sum for rows of hit positions

    Args:
        positions: (n_rows, n_hits) sorted hit positions
        weights: (n_rows, n_hits) |score|^weight at the hits
        n_genes: Length of the ranked list

    Returns:
        (tops, bottoms): running sum just after / just before each hit
    """
    n_hits = positions.shape[1]
    n_miss = n_genes - n_hits
    norm = weights.sum(axis=1, keepdims=True)
    # Hits that all score zero fall back to equal weights
    flat = norm[:, 0] == 0
    if np.any(flat):
        weights = weights.copy()
        weights[flat] = 1.0
        norm = weights.sum(axis=1, keepdims=True)
    hit_sum = np.cumsum(weights, axis=1) / norm
    misses = (positions - np.arange(n_hits)) / n_miss
    tops = hit_sum - misses
    bottoms = tops - weights / norm
    return tops, bottoms


def _enrichment_scores(tops, bottoms):
    peak = tops.max(axis=1)
    trough = bottoms.min(axis=1)
    return np.where(peak >= -trough, peak, trough)


def enrichment_score(ranked, gene_set, weight=1.0):
    """Running-sum enrichment score and leading edge of one set

    Returns:
        (ES, leading edge genes)
    """
    scores = ranked.to_numpy(dtype=float)
    hits = np.flatnonzero(ranked.index.isin(set(gene_set)))
    if hits.size == 0 or hits.size == scores.size:
        raise StatisticalDegeneracy(
            "gene set covers none or all of the ranked list", stage="enrichment"
        )
    weights = np.abs(scores[hits]) ** weight
    tops, bottoms = _running_sum_extremes(hits[None, :], weights[None, :], scores.size)
    es = float(_enrichment_scores(tops, bottoms)[0])
    genes = ranked.index[hits]
    if es >= 0:
        leading = genes[: int(np.argmax(tops[0])) + 1]
    else:
        leading = genes[int(np.argmin(bottoms[0])):]
    return es, leading.tolist()


def _null_scores(abs_scores, n_hits, n_permutations, rng, weight, batch=200):
    n_genes = abs_scores.size
    nulls = np.empty(n_permutations, dtype=float)
    for start in range(0, n_permutations, batch):
        stop = min(start + batch, n_permutations)
        positions = np.sort(
            np.stack([rng.choice(n_genes, size=n_hits, replace=False) for _ in range(stop - start)]),
            axis=1,
        )
        weights = abs_scores[positions] ** weight
        tops, bottoms = _running_sum_extremes(positions, weights, n_genes)
        nulls[start:stop] = _enrichment_scores(tops, bottoms)
    return nulls


def _test_pathway(ranked, name, members, n_permutations, seed, weight):
    es, leading = enrichment_score(ranked, members, weight=weight)
    rng = np.random.default_rng(derive_seed(seed, name))
    nulls = _null_scores(np.abs(ranked.to_numpy(dtype=float)), len(members), n_permutations, rng, weight)

    if es >= 0:
        same_sign = nulls[nulls >= 0]
        extreme = np.sum(same_sign >= es)
    else:
        same_sign = nulls[nulls < 0]
        extreme = np.sum(same_sign <= es)
    p_value = (extreme + 1) / (same_sign.size + 1)
    nes = es / abs(same_sign.mean()) if same_sign.size and same_sign.mean() != 0 else np.nan

    return EnrichmentResult(
        pathway=name,
        set_size=len(members),
        enrichment_score=es,
        nes=float(nes),
        p_value=float(p_value),
        leading_edge=leading,
    )


def enrich(
    ranked,
    gene_sets: Dict[str, List[str]],
    p_cutoff=0.05,
    min_size=50,
    max_size=500,
    n_permutations=1000,
    seed=42,
    weight=1.0,
    n_jobs=1,
):
    """Rank-based enrichment of gene sets along a ranked list

    Sets are sized by their overlap with the ranked list; sets outside
    [min_size, max_size] are skipped and recorded. Every tested set gets
    its own seed derived from ``seed`` and its name, so results do not
    depend on ``n_jobs``.

    Args:
        ranked: Series gene -> score, unique genes, sorted descending
        gene_sets: Dict pathway -> genes (same namespace as ``ranked``)
        p_cutoff: Report sets with p_value and p_adjust at or below this
        min_size, max_size: Inclusive overlap size bounds
        n_permutations: Gene-label permutations per set
        seed: Root seed
        weight: Exponent applied to |score| in the running sum
        n_jobs: Threads across pathways

    Returns:
        EnrichmentReport
    """
    if not 0 < p_cutoff <= 1:
        raise ParameterError(f"p_cutoff must be in (0, 1], got {p_cutoff}", stage="enrichment")
    if min_size < 1 or min_size > max_size:
        raise ParameterError(
            f"invalid set size bounds [{min_size}, {max_size}]", stage="enrichment"
        )
    if n_permutations < 1:
        raise ParameterError("n_permutations must be at least 1", stage="enrichment")
    validate_ranked(ranked)

    print(f"Running enrichment on {len(ranked)} ranked genes, {len(gene_sets)} gene sets")
    genes = set(ranked.index)
    to_test = []
    skipped = []
    for name in sorted(gene_sets):
        members = sorted(set(gene_sets[name]) & genes)
        if len(members) == 0:
            skipped.append({"pathway": name, "set_size": 0, "reason": "no overlap with ranked list"})
        elif not min_size <= len(members) <= max_size:
            skipped.append(
                {
                    "pathway": name,
                    "set_size": len(members),
                    "reason": f"overlap outside [{min_size}, {max_size}]",
                }
            )
        elif len(members) == len(ranked):
            skipped.append(
                {"pathway": name, "set_size": len(members), "reason": "set covers the ranked list"}
            )
        else:
            to_test.append((name, members))

    with ThreadPoolExecutor(max_workers=max(1, n_jobs)) as executor:
        futures = [
            executor.submit(_test_pathway, ranked, name, members, n_permutations, seed, weight)
            for name, members in to_test
        ]
        results = [future.result() for future in futures]

    if results:
        p_adjust = multipletests([r.p_value for r in results], method="fdr_bh")[1]
        for result, adj in zip(results, p_adjust):
            result.p_adjust = float(adj)

    tested = pd.DataFrame([asdict(r) for r in results], columns=RESULT_COLUMNS)
    tested["leading_edge"] = tested["leading_edge"].apply(lambda genes: "/".join(genes))
    tested = tested.sort_values(["p_value", "pathway"], kind="mergesort").reset_index(drop=True)
    reported = tested[
        (tested["p_value"] <= p_cutoff) & (tested["p_adjust"] <= p_cutoff)
    ].reset_index(drop=True)

    print(
        f"  {len(tested)} sets tested, {len(skipped)} skipped, "
        f"{len(reported)} with p <= {p_cutoff}"
    )
    return EnrichmentReport(
        results=reported,
        tested=tested,
        skipped=pd.DataFrame(skipped, columns=SKIPPED_COLUMNS),
    )
