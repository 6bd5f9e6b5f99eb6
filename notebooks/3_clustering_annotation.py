# %% [markdown]
# # Notebook 3: Clustering & Cell Type Annotation
#
# **📥 Input:** `qc_normalized.h5ad`
# **📤 Output:** `annotated.h5ad`
# **➡️ Next:** `4_condition_effects.ipynb`
#
# ---

# %%
import warnings
import scanpy as sc
import pandas as pd
from pathlib import Path
from IPython.display import display

from scartifacts.config import CLUSTER_PARAMS
from scartifacts.processing import run_pca, run_pca_umap_clustering, choose_resolution, plot_embeddings
from scartifacts.annotation import (
    MARKER_GENES,
    assign_celltypes_by_cluster_scores,
    create_cluster_aggregated_labels,
    plot_marker_genes,
    plot_cell_type_summary,
)

warnings.filterwarnings('ignore')
sc.settings.verbosity = 1

OUTPUT_DIR = Path("results")
PLOTS_DIR = Path("plots")
METHOD = CLUSTER_PARAMS["method"]  # 🔧 "louvain" or "leiden"

adata = sc.read_h5ad(OUTPUT_DIR / "qc_normalized.h5ad")

# %% [markdown]
# ## 1. PCA, UMAP & clustering

# %%
adata = run_pca(adata)
adata = run_pca_umap_clustering(adata, method=METHOD)

# %% [markdown]
# ### Resolution sweep
#
# Silhouette on PCA space for a grid of resolutions; ties are broken towards
# fewer small clusters, fewer clusters and lower resolution.

# %%
chosen = choose_resolution(adata, method=METHOD, save_dir=PLOTS_DIR)
print(f"Using resolution {chosen}")

# %%
plot_embeddings(adata, color=(METHOD, "time", "temperature", "culture", "donor", "library"))

# %% [markdown]
# Clusters should be driven by cell type, not by donor or sampling time. A
# cluster made of a single time point is the first hint of an artifact.

# %%
display(pd.crosstab(adata.obs[METHOD], adata.obs["time"], normalize="index").round(2))

# %% [markdown]
# ## 2. Annotation

# %%
plot_marker_genes(adata, MARKER_GENES, groupby=METHOD)

# %%
adata = assign_celltypes_by_cluster_scores(adata, cluster_key=METHOD, margin=0.05)
mixed = create_cluster_aggregated_labels(adata, cluster_col=METHOD)
plot_cell_type_summary(adata)

# %%
adata.write(OUTPUT_DIR / "annotated.h5ad")
print(f"✓ Saved {OUTPUT_DIR / 'annotated.h5ad'}")
