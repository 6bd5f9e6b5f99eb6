#!/usr/bin/env python3
"""
Differential expression utilities for the sampling-artifact study
Handles pseudobulk creation, condition-vs-reference testing and DEG summaries
"""

import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats
from scipy import sparse
from statsmodels.stats.multitest import multipletests

from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from scartifacts.config import DE_PARAMS, TIME_LEVELS, TEMPERATURE_LEVELS, CULTURE_LEVELS

RESULT_COLUMNS = [
    "gene",
    "logFC",
    "P.Value",
    "adj.P.Val",
    "AveExpr",
    "cell_type",
    "contrast",
    "significant",
    "upregulated",
    "downregulated",
]

DEFAULT_LEVELS = {
    "time": TIME_LEVELS,
    "temperature": TEMPERATURE_LEVELS,
    "culture": CULTURE_LEVELS,
}


def create_condition_column(adata, condition="time", levels=None):
    """Copy a sampling condition into an ordered "condition" column

    Args:
        adata: AnnData object
        condition: obs column to use ("time", "temperature", ...)
        levels: Factor levels in order (defaults to the configured levels)

    Returns:
        AnnData object with condition column added
    """
    if condition not in adata.obs:
        raise ValueError(f"Missing required columns: ['{condition}']")

    values = adata.obs[condition]
    labels = values.astype(str).where(values.notna())
    present = [str(v) for v in pd.unique(labels.dropna())]
    if levels is None:
        levels = DEFAULT_LEVELS.get(condition, [])
    categories = [lv for lv in levels if lv in present]
    categories.extend(lv for lv in present if lv not in categories)

    adata.obs["condition"] = pd.Categorical(labels, categories=categories, ordered=True)

    return adata


def _count_matrix(adata):
    if "counts" in adata.layers:
        return adata.layers["counts"], adata.var_names
    return adata.X, adata.var_names


def create_pseudobulk(
    adata,
    sample_col="donor",
    condition="condition",
    celltype_col="celltype",
    min_cells=DE_PARAMS["min_cells_pseudobulk"],
):
    """Create pseudobulk samples by summing counts per donor x condition x cell type

    Args:
        adata: AnnData object with raw counts in layers["counts"] (or X)
        sample_col: Column with the biological replicate (donor)
        condition: Column with the sampling condition
        celltype_col: Column with cell type labels
        min_cells: Minimum cells required per pseudobulk sample

    Returns:
        Tuple of (pseudobulk_df genes x samples, sample_info_df)
    """
    print("Creating pseudobulk samples...")

    missing = [c for c in (sample_col, condition, celltype_col) if c not in adata.obs]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    X, var_names = _count_matrix(adata)
    obs = adata.obs[[sample_col, condition, celltype_col]].dropna()

    group_ids = (
        obs[sample_col].astype(str)
        + "--"
        + obs[condition].astype(str)
        + "--"
        + obs[celltype_col].astype(str)
    )

    positions = pd.Series(np.arange(adata.n_obs), index=adata.obs_names)

    pseudobulk_data = []
    sample_info = []
    for group_id, cells in group_ids.groupby(group_ids, sort=False):
        n_cells = len(cells)
        if n_cells < min_cells:
            continue

        rows = positions.loc[cells.index].to_numpy()
        group_counts = np.asarray(X[rows].sum(axis=0)).ravel()
        pseudobulk_data.append(group_counts)

        first = obs.loc[cells.index[0]]
        sample_info.append(
            {
                "group_id": group_id,
                "donor": str(first[sample_col]),
                "condition": str(first[condition]),
                "celltype": str(first[celltype_col]),
                "n_cells": n_cells,
            }
        )

    sample_info_df = pd.DataFrame(
        sample_info, columns=["group_id", "donor", "condition", "celltype", "n_cells"]
    )
    if pseudobulk_data:
        pb_matrix = np.vstack(pseudobulk_data).T
    else:
        pb_matrix = np.zeros((len(var_names), 0))
    pb_df = pd.DataFrame(pb_matrix, index=var_names, columns=sample_info_df["group_id"].tolist())

    print(f"Created {pb_df.shape[1]} pseudobulk samples from {pb_df.shape[0]} genes")

    return pb_df, sample_info_df


def filter_genes_for_de(pb_df, min_count=DE_PARAMS["min_count"], min_samples=DE_PARAMS["min_samples_expr"]):
    """Keep genes with at least min_count counts in at least min_samples samples"""
    expressed_mask = (pb_df >= min_count).sum(axis=1) >= min_samples
    pb_filtered = pb_df.loc[expressed_mask]

    print(f"Kept {pb_filtered.shape[0]} genes after filtering")

    return pb_filtered


def build_contrasts(levels, reference):
    """One contrast per non-reference level: (name, level, reference)"""
    levels = [str(lv) for lv in levels]
    if str(reference) not in levels:
        raise ValueError(f"Reference level {reference!r} not in {levels}")
    return [(f"{lv}_vs_{reference}", lv, str(reference)) for lv in levels if lv != str(reference)]


def _add_significance(results_df, de_params):
    results_df["significant"] = (
        (results_df["adj.P.Val"] < de_params["fdr_threshold"])
        & (results_df["logFC"].abs() > de_params["fc_threshold"])
        & results_df["adj.P.Val"].notna()
    )
    results_df["upregulated"] = results_df["significant"] & (results_df["logFC"] > 0)
    results_df["downregulated"] = results_df["significant"] & (results_df["logFC"] < 0)

    n_sig = results_df["significant"].sum()
    n_up = results_df["upregulated"].sum()
    n_down = results_df["downregulated"].sum()
    print(f"    {n_sig} significant genes ({n_up} up, {n_down} down)")

    return results_df


def run_de_with_deseq2(counts_df, sample_info_df, contrast_name, group1, group2, de_params, cell_type):
    """Run DESeq2 (PyDESeq2) for a single contrast

    Donor is added to the design when every donor contributes to both groups.

    Args:
        counts_df: Count matrix (genes x samples)
        sample_info_df: Sample metadata DataFrame
        contrast_name: Name of the contrast
        group1: Tested condition
        group2: Reference condition
        de_params: DE parameters dictionary
        cell_type: Cell type being analyzed

    Returns:
        DataFrame with DE results or None
    """
    contrast_samples = sample_info_df[sample_info_df["condition"].isin([group1, group2])].copy()
    if len(contrast_samples) < 4:
        print(f"  Skipping {contrast_name}: Only {len(contrast_samples)} samples")
        return None

    print(
        f"  Testing {contrast_name} ({(contrast_samples['condition'] == group1).sum()} vs "
        f"{(contrast_samples['condition'] == group2).sum()} samples)"
    )

    contrast_samples["condition"] = pd.Categorical(
        contrast_samples["condition"], categories=[group2, group1]
    )
    metadata = contrast_samples.set_index("group_id")

    # PyDESeq2 expects samples x genes integer counts
    counts = counts_df[metadata.index].T
    counts = pd.DataFrame(
        np.round(counts.to_numpy()).astype(int), index=counts.index, columns=counts.columns
    )

    per_donor = metadata.groupby("donor")["condition"].nunique()
    paired = len(per_donor) > 1 and (per_donor == 2).all()
    design = "~donor + condition" if paired else "~condition"

    try:
        dds = DeseqDataSet(counts=counts, metadata=metadata, design=design, refit_cooks=True, quiet=True)
        dds.deseq2()
        stat_res = DeseqStats(dds, contrast=["condition", group1, group2], quiet=True)
        stat_res.summary()
    except (ValueError, np.linalg.LinAlgError) as e:
        print(f"  Error running DESeq2 for {contrast_name}: {e}")
        return None

    results_df = stat_res.results_df.rename(
        columns={
            "log2FoldChange": "logFC",
            "pvalue": "P.Value",
            "padj": "adj.P.Val",
            "baseMean": "AveExpr",
        }
    )
    results_df["gene"] = results_df.index
    results_df["cell_type"] = cell_type
    results_df["contrast"] = contrast_name
    results_df = _add_significance(results_df.reset_index(drop=True), de_params)

    return results_df[RESULT_COLUMNS]


def run_de_with_ttest(counts_df, sample_info_df, contrast_name, group1, group2, de_params, cell_type):
    """Welch t-test on log2-CPM with Benjamini-Hochberg correction

    Args:
        counts_df: Count matrix (genes x samples)
        sample_info_df: Sample metadata DataFrame
        contrast_name: Name of the contrast
        group1: Tested condition
        group2: Reference condition
        de_params: DE parameters dictionary
        cell_type: Cell type being analyzed

    Returns:
        DataFrame with DE results or None
    """
    mask1 = sample_info_df["condition"] == group1
    mask2 = sample_info_df["condition"] == group2

    if mask1.sum() < 2 or mask2.sum() < 2:
        print(f"  Skipping {contrast_name}: Missing groups")
        return None

    print(f"  Testing {contrast_name} ({mask1.sum()} vs {mask2.sum()} samples) [t-test]")

    lib_sizes = counts_df.sum(axis=0)
    log_cpm = np.log2(counts_df.div(lib_sizes, axis=1) * 1e6 + 1)

    group1_data = log_cpm.loc[:, sample_info_df.loc[mask1, "group_id"]].to_numpy()
    group2_data = log_cpm.loc[:, sample_info_df.loc[mask2, "group_id"]].to_numpy()

    _, pvals = stats.ttest_ind(group1_data, group2_data, axis=1, equal_var=False)
    # Constant genes give NaN
    pvals = np.where(np.isnan(pvals), 1.0, pvals)

    mean1 = group1_data.mean(axis=1)
    mean2 = group2_data.mean(axis=1)

    results_df = pd.DataFrame(
        {
            "gene": log_cpm.index,
            "logFC": mean1 - mean2,
            "P.Value": pvals,
            "adj.P.Val": multipletests(pvals, method="fdr_bh")[1],
            "AveExpr": (mean1 + mean2) / 2,
            "cell_type": cell_type,
            "contrast": contrast_name,
        }
    )
    results_df = _add_significance(results_df, de_params)

    return results_df[RESULT_COLUMNS]


def run_de_for_celltype(
    pb_df,
    sample_info_df,
    cell_type,
    contrasts,
    de_params=DE_PARAMS,
    min_samples_per_group=2,
    min_genes=100,
    use_deseq2=True,
):
    """Run every contrast for one cell type

    Args:
        pb_df: Pseudobulk expression DataFrame (genes x samples)
        sample_info_df: Sample metadata DataFrame
        cell_type: Cell type to analyze
        contrasts: List of (name, group, reference) tuples
        de_params: Dictionary of DE parameters
        min_samples_per_group: Minimum number of samples per group required
        min_genes: Skip the cell type when fewer genes pass filtering
        use_deseq2: Whether to use DESeq2 (True) or the t-test (False)

    Returns:
        DataFrame with DE results or None
    """
    print(f"\n{'='*60}")
    print(f"ANALYZING: {cell_type}")
    print(f"{'='*60}")

    ct_samples = sample_info_df[sample_info_df["celltype"] == cell_type].copy()

    if len(ct_samples) < min_samples_per_group * 2:
        print(f"Skipping {cell_type}: Only {len(ct_samples)} samples")
        return None

    ct_counts = filter_genes_for_de(
        pb_df[ct_samples["group_id"]],
        min_count=de_params["min_count"],
        min_samples=de_params["min_samples_expr"],
    )

    if ct_counts.shape[0] < min_genes:
        print(f"Skipping {cell_type}: Only {ct_counts.shape[0]} genes after filtering")
        return None

    run_contrast = run_de_with_deseq2 if use_deseq2 else run_de_with_ttest
    results = []
    for contrast_name, group1, group2 in contrasts:
        n1 = (ct_samples["condition"] == group1).sum()
        n2 = (ct_samples["condition"] == group2).sum()
        if n1 < min_samples_per_group or n2 < min_samples_per_group:
            print(f"  Skipping {contrast_name}: {n1} vs {n2} samples")
            continue

        result = run_contrast(ct_counts, ct_samples, contrast_name, group1, group2, de_params, cell_type)
        if result is not None:
            results.append(result)

    if results:
        return pd.concat(results, ignore_index=True)
    return None


def run_de_all_celltypes(
    pb_df,
    sample_info_df,
    reference,
    levels=None,
    cell_types=None,
    de_params=DE_PARAMS,
    use_deseq2=True,
    **kwargs,
):
    """Run condition-vs-reference DE for every cell type

    Returns:
        Concatenated DataFrame (empty when nothing could be tested)
    """
    if levels is None:
        levels = list(pd.unique(sample_info_df["condition"]))
    contrasts = build_contrasts(levels, reference)
    if cell_types is None:
        cell_types = sorted(sample_info_df["celltype"].unique())

    all_results = []
    for cell_type in cell_types:
        result = run_de_for_celltype(
            pb_df,
            sample_info_df,
            cell_type,
            contrasts,
            de_params=de_params,
            use_deseq2=use_deseq2,
            **kwargs,
        )
        if result is not None:
            all_results.append(result)

    if all_results:
        return pd.concat(all_results, ignore_index=True)
    return pd.DataFrame(columns=RESULT_COLUMNS)


def run_cell_level_de(
    adata,
    condition="condition",
    reference="0h",
    groupby="celltype",
    method="wilcoxon",
    min_cells=10,
    de_params=DE_PARAMS,
):
    """Cell-level test of every condition level against the reference, per cell type

    Args:
        adata: Log-normalized AnnData object
        condition: obs column with the sampling condition
        reference: Reference level
        groupby: obs column with cell types
        method: scanpy rank_genes_groups method
        min_cells: Minimum cells per level within a cell type

    Returns:
        DataFrame with the standard DE result columns
    """
    missing = [c for c in (condition, groupby) if c not in adata.obs]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    reference = str(reference)
    all_results = []
    for cell_type in pd.unique(adata.obs[groupby].dropna()):
        sub = adata[(adata.obs[groupby] == cell_type).values].copy()
        levels = sub.obs[condition].astype(str)
        counts = levels.value_counts()
        valid = [lv for lv in counts.index if counts[lv] >= min_cells and lv != "nan"]
        if reference not in valid or len(valid) < 2:
            print(f"Skipping {cell_type}: not enough cells per level")
            continue

        sub = sub[levels.isin(valid).values].copy()
        sub.obs["_level"] = pd.Categorical(sub.obs[condition].astype(str), categories=valid)

        sc.tl.rank_genes_groups(
            sub, groupby="_level", reference=reference, method=method, use_raw=False
        )
        df = sc.get.rank_genes_groups_df(sub, group=None)
        if "group" not in df:
            df["group"] = [lv for lv in valid if lv != reference][0]

        df = df.rename(
            columns={
                "names": "gene",
                "logfoldchanges": "logFC",
                "pvals": "P.Value",
                "pvals_adj": "adj.P.Val",
            }
        )

        # Mean log expression over the tested level and the reference
        level_means = {
            lv: pd.Series(
                np.asarray(sub[(sub.obs["_level"] == lv).values].X.mean(axis=0)).ravel(),
                index=sub.var_names,
            )
            for lv in valid
        }
        df["AveExpr"] = np.nan
        for group, rows in df.groupby(df["group"].astype(str)).groups.items():
            pair_mean = (level_means[group] + level_means[reference]) / 2
            df.loc[rows, "AveExpr"] = pair_mean.reindex(df.loc[rows, "gene"]).values

        df["cell_type"] = str(cell_type)
        df["contrast"] = df["group"].astype(str) + f"_vs_{reference}"
        print(f"  {cell_type}:")
        df = _add_significance(df, de_params)
        all_results.append(df[RESULT_COLUMNS])

    if all_results:
        return pd.concat(all_results, ignore_index=True)
    return pd.DataFrame(columns=RESULT_COLUMNS)


def count_degs(de_results):
    """Number of significant, up- and down-regulated genes per cell type and contrast"""
    if de_results.empty:
        return pd.DataFrame(columns=["cell_type", "contrast", "n_significant", "n_up", "n_down"])

    counts = (
        de_results.groupby(["cell_type", "contrast"], sort=False)
        .agg(
            n_significant=("significant", "sum"),
            n_up=("upregulated", "sum"),
            n_down=("downregulated", "sum"),
        )
        .reset_index()
    )
    return counts.astype({"n_significant": int, "n_up": int, "n_down": int})


def plot_de_summary(deg_counts, save_path=None):
    """Heatmap of significant DE gene counts (cell type x contrast)"""
    print("Plotting DE summary...")

    heatmap_data = deg_counts.pivot(
        index="cell_type", columns="contrast", values="n_significant"
    ).fillna(0)

    fig, ax = plt.subplots(figsize=(max(6, 1.5 * heatmap_data.shape[1]), max(4, 0.5 * heatmap_data.shape[0])))
    sns.heatmap(heatmap_data, annot=True, fmt="g", cmap="Blues", ax=ax)
    ax.set_title("Number of significant DE genes")
    ax.set_xlabel("Contrast")
    ax.set_ylabel("Cell type")
    plt.xticks(rotation=45, ha="right")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return heatmap_data


def plot_deg_counts(deg_counts, contrast_order=None, save_path=None):
    """Bar chart of DEG counts per contrast (up positive, down negative)"""
    data = deg_counts.copy()
    if contrast_order is not None:
        order = [c for c in contrast_order if c in set(data["contrast"])]
    else:
        order = list(pd.unique(data["contrast"]))

    data["n_down"] = -data["n_down"]
    long_df = data.melt(
        id_vars=["cell_type", "contrast"], value_vars=["n_up", "n_down"], var_name="direction", value_name="n_genes"
    )

    fig, ax = plt.subplots(figsize=(max(6, 1.5 * len(order)), 4.5))
    sns.barplot(
        data=long_df, x="contrast", y="n_genes", hue="cell_type", order=order, ax=ax, errorbar=None
    )
    ax.axhline(0, color="black", linewidth=0.8)
    ax.set_ylabel("DEGs (up > 0 > down)")
    ax.set_xlabel("Contrast")
    ax.legend(title="Cell type", bbox_to_anchor=(1.0, 1.0), loc="upper left")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()


def plot_de_heatmap(pb_df, sample_info_df, de_results, cell_type, contrast, condition_order=None, top_n=50, save_path=None):
    """Heatmap of top DE genes across pseudobulk samples

    Args:
        pb_df: Pseudobulk expression DataFrame
        sample_info_df: Sample metadata DataFrame
        de_results: DE results DataFrame
        cell_type: Cell type to plot
        contrast: Contrast name
        condition_order: Order of conditions along the x axis
        top_n: Number of top genes to show
        save_path: Path to save figure
    """
    ct_results = de_results[
        (de_results["cell_type"] == cell_type) & (de_results["contrast"] == contrast)
    ]

    if len(ct_results) == 0:
        print(f"No results for {cell_type} - {contrast}")
        return

    top_up = ct_results.nlargest(top_n // 2, "logFC")
    top_down = ct_results.nsmallest(top_n // 2, "logFC")
    top_genes = list(dict.fromkeys(pd.concat([top_up, top_down])["gene"]))

    ct_samples = sample_info_df[sample_info_df["celltype"] == cell_type]
    counts = pb_df[ct_samples["group_id"]]
    log_cpm = np.log2(counts.div(counts.sum(axis=0), axis=1) * 1e6 + 1)
    heatmap_data = log_cpm.loc[[g for g in top_genes if g in log_cpm.index]]

    if condition_order is None:
        condition_order = list(pd.unique(ct_samples["condition"]))
    sample_order = []
    for cond in condition_order:
        sample_order.extend(ct_samples.loc[ct_samples["condition"] == cond, "group_id"].tolist())
    heatmap_data = heatmap_data[sample_order]

    fig, ax = plt.subplots(figsize=(12, max(6, len(heatmap_data) * 0.3)))
    sns.heatmap(
        heatmap_data,
        cmap=sns.diverging_palette(220, 20, as_cmap=True),
        center=float(heatmap_data.values.mean()),
        xticklabels=True,
        yticklabels=True,
        cbar_kws={"label": "Log2(CPM + 1)"},
        ax=ax,
    )
    ax.set_title(f"{cell_type} - {contrast}\nTop {len(heatmap_data)} DE genes", fontsize=14, fontweight="bold")
    ax.set_xlabel("Samples (grouped by condition)")
    ax.set_ylabel("Genes")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()


def plot_volcano(de_results, cell_type, contrast, fc_threshold=DE_PARAMS["fc_threshold"],
                 pval_threshold=DE_PARAMS["fdr_threshold"], save_path=None):
    """Volcano plot for one cell type and contrast

    Args:
        de_results: DE results DataFrame
        cell_type: Cell type to plot
        contrast: Contrast name
        fc_threshold: Log2FC threshold for coloring
        pval_threshold: Adjusted p-value threshold for coloring
        save_path: Path to save figure
    """
    ct_results = de_results[
        (de_results["cell_type"] == cell_type) & (de_results["contrast"] == contrast)
    ].copy()

    if len(ct_results) == 0:
        print(f"No results for {cell_type} - {contrast}")
        return

    ct_results["neg_log10_pval"] = -np.log10(ct_results["P.Value"].astype(float) + 1e-300)
    ct_results["category"] = "Not significant"
    sig = ct_results["adj.P.Val"] < pval_threshold
    ct_results.loc[sig & (ct_results["logFC"] > fc_threshold), "category"] = "Upregulated"
    ct_results.loc[sig & (ct_results["logFC"] < -fc_threshold), "category"] = "Downregulated"

    fig, ax = plt.subplots(figsize=(8, 6.5))
    palette = {"Not significant": "gray", "Upregulated": "red", "Downregulated": "blue"}
    for category, color in palette.items():
        data = ct_results[ct_results["category"] == category]
        if len(data) == 0:
            continue
        label = category if category == "Not significant" else f"{category} (n={len(data)})"
        ax.scatter(data["logFC"], data["neg_log10_pval"], c=color, alpha=0.6, s=20, label=label)

    ax.axvline(fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axvline(-fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axhline(-np.log10(pval_threshold), color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.set_xlabel("Log2 Fold Change")
    ax.set_ylabel("-Log10(P-value)")
    ax.set_title(f"{cell_type} - {contrast}", fontsize=14, fontweight="bold")
    ax.legend(loc="best")
    ax.grid(alpha=0.3)
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()
