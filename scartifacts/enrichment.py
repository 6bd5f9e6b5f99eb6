#!/usr/bin/env python3
"""
Gene set enrichment for artifact signatures
Over-representation (Enrichr) and preranked GSEA through gseapy
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import gseapy as gp

RANKING_EPS = 1e-300
DEFAULT_GENE_SETS = ["GO_Biological_Process_2021", "KEGG_2021_Human", "MSigDB_Hallmark_2020"]

GeneSets = Union[str, List[str], Dict[str, List[str]]]


def standardize_enrichment_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Lowercase/slugify gseapy columns and map tool-specific names to canonical ones."""
    normalized = df.copy()
    normalized.columns = [
        col.strip().lower().replace(" ", "_").replace("-", "_") for col in normalized.columns
    ]

    column_aliases = {
        "nom_p_val": "pval",
        "p_value": "pval",
        "fdr_q_val": "fdr",
        "adjusted_p_value": "fdr",
        "tag_%": "tag_percent",
        "gene_%": "gene_percent",
    }
    for source, target in column_aliases.items():
        if source in normalized.columns and target not in normalized.columns:
            normalized = normalized.rename(columns={source: target})

    return normalized


def run_enrichr(
    genes: List[str],
    gene_sets: GeneSets = DEFAULT_GENE_SETS,
    organism: str = "human",
    outdir: Optional[Path] = None,
    cutoff: float = 0.05,
) -> Optional[pd.DataFrame]:
    """Over-representation analysis of a gene list with Enrichr

    Returns:
        Standardized results DataFrame, or None for an empty gene list
    """
    genes = [g for g in dict.fromkeys(genes) if g]
    if not genes:
        print("Skipping Enrichr: empty gene list")
        return None

    print(f"Running Enrichr on {len(genes)} genes...")
    enr = gp.enrichr(
        gene_list=genes,
        gene_sets=gene_sets,
        organism=organism,
        outdir=str(outdir) if outdir else None,
        cutoff=cutoff,
        no_plot=True,
    )

    results = standardize_enrichment_columns(enr.results)
    if "fdr" in results:
        print(f"  {int((results['fdr'] < cutoff).sum())} terms with FDR < {cutoff}")
    return results


def compute_rank_vector(de_results: pd.DataFrame, metric: str = "logFC") -> pd.Series:
    """Return a preranked Series indexed by gene symbol.

    metric="logFC" ranks on fold change alone; metric="signed_p" ranks on
    logFC * -log10(p-value).
    """
    if metric not in ("logFC", "signed_p"):
        raise ValueError(f"Unknown ranking metric: {metric}")

    required_cols = ["gene", "logFC"] + (["P.Value"] if metric == "signed_p" else [])
    missing = [col for col in required_cols if col not in de_results.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    clean = de_results.dropna(subset=required_cols).copy()
    if clean.empty:
        return pd.Series(dtype=float)

    if metric == "signed_p":
        clean["rank_score"] = clean["logFC"] * -np.log10(clean["P.Value"].clip(lower=RANKING_EPS))
    else:
        clean["rank_score"] = clean["logFC"]

    # Deduplicate genes by retaining the entry with the largest absolute score.
    clean["abs_rank"] = clean["rank_score"].abs()
    clean = (
        clean.sort_values("abs_rank", ascending=False)
        .drop_duplicates(subset="gene", keep="first")
        .sort_values("rank_score", ascending=False)
    )
    ranking = clean.set_index("gene")["rank_score"].astype(float)

    # Strictly monotonic ranks for gseapy
    if ranking.duplicated().any():
        # Offset only within tied groups, in order of appearance
        ranking = ranking - ranking.groupby(ranking).cumcount() * 1e-12
        ranking = ranking.sort_values(ascending=False)

    return ranking


def run_prerank(
    de_results: pd.DataFrame,
    gene_sets: GeneSets = "MSigDB_Hallmark_2020",
    metric: str = "logFC",
    min_size: int = 15,
    max_size: int = 500,
    permutation_num: int = 1000,
    outdir: Optional[Path] = None,
    seed: int = 42,
    threads: int = 1,
) -> Optional[pd.DataFrame]:
    """Preranked GSEA on the fold changes of one DE table

    Returns:
        Standardized results DataFrame with a "term" column, or None when the
        ranking is shorter than min_size
    """
    ranking = compute_rank_vector(de_results, metric=metric)
    if ranking.size < min_size:
        print(f"Skipping GSEA: ranking has only {ranking.size} genes (< {min_size}).")
        return None

    print(f"Running preranked GSEA on {ranking.size} genes...")
    prerank_res = gp.prerank(
        rnk=ranking,
        gene_sets=gene_sets,
        min_size=min_size,
        max_size=max_size,
        permutation_num=permutation_num,
        outdir=str(outdir) if outdir else None,
        seed=seed,
        threads=threads,
        no_plot=True,
    )

    res_df = standardize_enrichment_columns(prerank_res.res2d.reset_index(drop=True))
    res_df["ranking_size"] = ranking.size
    return res_df


def plot_enrichment(results: pd.DataFrame, top_n: int = 10, save_path: Optional[Path] = None):
    """Bar chart of the top terms (NES for GSEA, -log10 FDR for Enrichr)"""
    if results is None or results.empty:
        print("No enrichment results to plot")
        return

    data = results.copy()
    if "nes" in data.columns:
        data["nes"] = data["nes"].astype(float)
        data = data.reindex(data["nes"].abs().sort_values(ascending=False).index).head(top_n)
        values = data["nes"]
        colors = ["red" if x > 0 else "blue" for x in values]
        xlabel = "Normalized Enrichment Score (NES)"
    else:
        data = data.sort_values("fdr").head(top_n)
        values = -np.log10(data["fdr"].astype(float).clip(lower=RANKING_EPS))
        colors = ["steelblue"] * len(values)
        xlabel = "-Log10(FDR)"

    fig, ax = plt.subplots(figsize=(10, max(3, 0.45 * len(data))))
    ax.barh(range(len(data)), values, color=colors, alpha=0.7)
    ax.set_yticks(range(len(data)))
    ax.set_yticklabels(data["term"].astype(str))
    ax.invert_yaxis()
    ax.set_xlabel(xlabel)
    ax.axvline(x=0, color="black", linestyle="--", alpha=0.5)
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()
