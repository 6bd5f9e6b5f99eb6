#!/usr/bin/env python3
"""
Analysis parameters for the sampling-artifact scRNA-seq study

This file centralizes every threshold used across the analysis steps.
Modify these values to adjust filtering stringency or test settings.
"""

# Cell-level filters (PBMC, 10x v3 chemistry)
CELL_FILTERS = {
    "min_genes": 250,  # Minimum genes detected per cell
    "max_genes": 5000,  # Maximum genes detected per cell
    "min_counts": 500,  # Minimum total counts per cell
    "max_counts": 40000,  # Maximum total counts per cell
    "max_mt_pct": 20,  # Long delays raise the mitochondrial fraction
    "max_ribo_pct": None,  # Maximum ribosomal gene percentage (None = no filter)
}

# Gene-level filters
GENE_FILTERS = {
    "min_cells": 5,  # Minimum cells expressing a gene
}

# Doublet detection parameters (Scrublet)
DOUBLET_PARAMS = {
    "expected_doublet_rate": 0.06,
    "min_counts": 2,
    "min_cells": 3,
    "min_gene_variability_pctl": 85,
    "n_prin_comps": 30,
    "min_cells_per_library": 100,  # Libraries below this are not scrubbed
}

# Cell hashing demultiplexing
HASHTAG_PARAMS = {
    "positive_quantile": 0.99,  # Quantile of the background NB fit
    "n_clusters": None,  # None = number of hashtags + 1
    "kfunc": "kmeans",
    "seed": 42,
    "hto_prefix": "HTO",  # Feature name prefix marking hashtags of any feature type
}

# Dimensionality reduction and graph clustering
CLUSTER_PARAMS = {
    "n_pcs": 20,
    "n_neighbors": 15,
    "resolution": 0.6,
    "method": "louvain",
}

# kBET (k-nearest-neighbour batch effect test)
KBET_PARAMS = {
    "k0": None,  # None = derived from the mean batch size
    "alpha": 0.05,
    "test_size": 0.1,  # Fraction of cells tested per repeat
    "n_repeats": 20,
    "seed": 0,
    "n_pcs": 20,
    "min_cells_per_batch": 20,
}

# Differential expression
DE_PARAMS = {
    "min_count": 5,  # Pseudobulk count threshold
    "min_samples_expr": 2,  # Samples that must pass min_count
    "fdr_threshold": 0.05,
    "fc_threshold": 0.5,  # |log2FC|
    "min_cells_pseudobulk": 10,
}

# Artifact signatures
SIGNATURE_PARAMS = {
    "top_n": 200,
    "score_percentile": 95,  # Reference percentile that flags an affected cell
}

# Human gene name patterns
GENE_PATTERNS = {
    "mt_pattern": "MT-",
    "ribo_pattern": r"^RP[SL]",
}

# Factor levels for the sampling conditions
TIME_LEVELS = ["0h", "2h", "8h", "24h", "48h"]
TEMPERATURE_LEVELS = ["4C", "21C"]
CULTURE_LEVELS = ["uncultured", "cultured"]
REFERENCE_LEVELS = {
    "time": "0h",
    "temperature": "4C",
    "culture": "uncultured",
}


def get_config_summary():
    """Return a formatted summary of current parameter settings"""
    summary = [
        "=== Analysis Settings ===",
        "\nCell-level filters:",
        f"  - Genes per cell: {CELL_FILTERS['min_genes']} - {CELL_FILTERS['max_genes']}",
        f"  - Counts per cell: {CELL_FILTERS['min_counts']} - {CELL_FILTERS['max_counts']}",
        f"  - Max mitochondrial %: {CELL_FILTERS['max_mt_pct']}%",
    ]

    if CELL_FILTERS["max_ribo_pct"]:
        summary.append(f"  - Max ribosomal %: {CELL_FILTERS['max_ribo_pct']}%")

    summary.extend(
        [
            "\nGene-level filters:",
            f"  - Min cells expressing: {GENE_FILTERS['min_cells']}",
            "\nDoublet detection:",
            f"  - Expected rate: {DOUBLET_PARAMS['expected_doublet_rate']*100}%",
            "\nHashtag demultiplexing:",
            f"  - Positive quantile: {HASHTAG_PARAMS['positive_quantile']}",
            "\nClustering:",
            f"  - {CLUSTER_PARAMS['method']} at resolution {CLUSTER_PARAMS['resolution']}"
            f" on {CLUSTER_PARAMS['n_pcs']} PCs",
            "\nkBET:",
            f"  - alpha: {KBET_PARAMS['alpha']}, repeats: {KBET_PARAMS['n_repeats']}",
            "\nDifferential expression:",
            f"  - FDR < {DE_PARAMS['fdr_threshold']}, |log2FC| > {DE_PARAMS['fc_threshold']}",
        ]
    )

    return "\n".join(summary)


def validate_config(
    cell_filters=None,
    doublet_params=None,
    hashtag_params=None,
    kbet_params=None,
    de_params=None,
):
    """Validate that parameters make sense

    Any argument left as None is taken from the module-level settings.
    """
    cell_filters = CELL_FILTERS if cell_filters is None else cell_filters
    doublet_params = DOUBLET_PARAMS if doublet_params is None else doublet_params
    hashtag_params = HASHTAG_PARAMS if hashtag_params is None else hashtag_params
    kbet_params = KBET_PARAMS if kbet_params is None else kbet_params
    de_params = DE_PARAMS if de_params is None else de_params

    errors = []

    # Check min/max relationships
    if cell_filters["min_genes"] >= cell_filters["max_genes"]:
        errors.append("min_genes must be less than max_genes")

    if cell_filters["min_counts"] >= cell_filters["max_counts"]:
        errors.append("min_counts must be less than max_counts")

    # Check percentage bounds
    if not 0 <= cell_filters["max_mt_pct"] <= 100:
        errors.append("max_mt_pct must be between 0 and 100")

    if cell_filters["max_ribo_pct"] and not 0 <= cell_filters["max_ribo_pct"] <= 100:
        errors.append("max_ribo_pct must be between 0 and 100")

    # Check rates and quantiles
    if not 0 < doublet_params["expected_doublet_rate"] < 1:
        errors.append("expected_doublet_rate must be between 0 and 1")

    if not 0 < hashtag_params["positive_quantile"] < 1:
        errors.append("positive_quantile must be between 0 and 1")

    if not 0 < kbet_params["alpha"] < 1:
        errors.append("kBET alpha must be between 0 and 1")

    if not 0 < kbet_params["test_size"] <= 1:
        errors.append("kBET test_size must be in (0, 1]")

    if not 0 < de_params["fdr_threshold"] < 1:
        errors.append("fdr_threshold must be between 0 and 1")

    if errors:
        raise ValueError("Config validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_config()
