"""
Shared fixtures: small synthetic PBMC datasets with donors, sampling times and hashtags.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import anndata as ad
import pytest
from scipy import sparse

CELLTYPE_MARKERS = {
    "CD4 T": ["IL7R", "CD4", "CCR7", "LEF1"],
    "B": ["MS4A1", "CD79A", "CD79B", "CD19"],
    "CD14 Monocyte": ["CD14", "LYZ", "S100A8", "S100A9"],
}
ARTIFACT_GENES = ["FOS", "JUN", "DUSP1", "IER2", "KLF6", "EGR1", "NR4A1", "ZFP36"]
MT_GENES = ["MT-CO1", "MT-ND1", "MT-ATP6", "MT-CYB", "MT-ND4"]
RIBO_GENES = ["RPS3", "RPS6", "RPL13", "RPL3", "RPL10"]
BACKGROUND_GENES = [f"GENE{i}" for i in range(200)]

DONORS = ["D1", "D2", "D3"]
TIMES = ["0h", "24h"]


def make_pbmc_counts(cells_per_group=20, seed=0):
    """Poisson counts for 3 cell types x 3 donors x 2 times

    Artifact genes are induced eightfold at 24h in every cell type.
    """
    rng = np.random.default_rng(seed)

    marker_genes = [g for genes in CELLTYPE_MARKERS.values() for g in genes]
    var_names = marker_genes + ARTIFACT_GENES + MT_GENES + RIBO_GENES + BACKGROUND_GENES
    background_rates = rng.gamma(2.0, 1.0, size=len(BACKGROUND_GENES))

    blocks = []
    obs_rows = []
    for celltype, markers in CELLTYPE_MARKERS.items():
        for donor in DONORS:
            for time in TIMES:
                rates = np.concatenate(
                    [
                        [12.0 if g in markers else 0.1 for g in marker_genes],
                        np.full(len(ARTIFACT_GENES), 8.0 if time == "24h" else 1.0),
                        np.full(len(MT_GENES), 2.0),
                        np.full(len(RIBO_GENES), 5.0),
                        background_rates,
                    ]
                )
                blocks.append(rng.poisson(rates, size=(cells_per_group, len(var_names))))
                for _ in range(cells_per_group):
                    obs_rows.append(
                        {
                            "true_celltype": celltype,
                            "donor": donor,
                            "time": time,
                            "temperature": "21C",
                            "library": "L1" if donor in ("D1", "D2") else "L2",
                        }
                    )

    obs = pd.DataFrame(obs_rows)
    obs.index = [f"cell{i}" for i in range(len(obs))]
    obs["time"] = pd.Categorical(obs["time"], categories=TIMES, ordered=True)

    X = sparse.csr_matrix(np.vstack(blocks).astype(np.float32))
    return ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=var_names))


def make_hto_counts(n_per_tag=100, n_doublets=15, n_negatives=15, seed=1):
    """Hashtag count table with known singlets, doublets and negatives"""
    rng = np.random.default_rng(seed)
    tags = ["HTO-A", "HTO-B", "HTO-C"]

    rows = []
    truth = []
    for j, tag in enumerate(tags):
        for _ in range(n_per_tag):
            counts = rng.poisson(5, size=len(tags))
            counts[j] = rng.negative_binomial(10, 10 / (10 + 200))
            rows.append(counts)
            truth.append(("Singlet", tag))
    for i in range(n_doublets):
        counts = rng.poisson(5, size=len(tags))
        first, second = i % 3, (i + 1) % 3
        counts[first] = rng.negative_binomial(10, 10 / (10 + 200))
        counts[second] = rng.negative_binomial(10, 10 / (10 + 200))
        rows.append(counts)
        truth.append(("Doublet", "_".join(sorted([tags[first], tags[second]]))))
    for _ in range(n_negatives):
        rows.append(rng.poisson(5, size=len(tags)))
        truth.append(("Negative", "Negative"))

    obs_names = [f"bc{i}" for i in range(len(rows))]
    hto = pd.DataFrame(np.vstack(rows), index=obs_names, columns=tags)

    obs = pd.DataFrame(
        {
            "library": ["L1"] * (len(rows) // 2) + ["L2"] * (len(rows) - len(rows) // 2),
            "true_global": [t[0] for t in truth],
            "true_classification": [t[1] for t in truth],
        },
        index=obs_names,
    )
    rng_genes = rng.poisson(1.0, size=(len(rows), 20)).astype(np.float32)
    adata = ad.AnnData(
        X=sparse.csr_matrix(rng_genes), obs=obs, var=pd.DataFrame(index=[f"G{i}" for i in range(20)])
    )
    adata.obsm["hto"] = hto
    return adata


@pytest.fixture
def pbmc_counts():
    return make_pbmc_counts()


@pytest.fixture
def pbmc_processed():
    from scartifacts.processing import normalize_and_scale, run_pca

    adata = make_pbmc_counts()
    adata = normalize_and_scale(adata, n_top_genes=100)
    adata = run_pca(adata, n_comps=20)
    adata.obs["celltype"] = pd.Categorical(adata.obs["true_celltype"])
    return adata


@pytest.fixture
def hto_adata():
    return make_hto_counts()
