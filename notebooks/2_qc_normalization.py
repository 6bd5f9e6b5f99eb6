# %% [markdown]
# # Notebook 2: QC, Doublets & Normalization
#
# Time at room temperature lowers library complexity and shifts the
# mitochondrial fraction, so QC metrics are inspected per sampling condition
# before any filter is applied.
#
# **📥 Input:** `demultiplexed.h5ad`
# **📤 Output:** `qc_normalized.h5ad`
# **➡️ Next:** `3_clustering_annotation.ipynb`
#
# ---

# %%
import warnings
import scanpy as sc
from pathlib import Path
from IPython.display import display

from scartifacts.config import CELL_FILTERS, DOUBLET_PARAMS
from scartifacts.qc import (
    calculate_qc_metrics,
    plot_qc_metrics,
    plot_qc_by_condition,
    summarize_qc_by_condition,
    detect_doublets,
    filter_cells_and_genes,
    filtering_report,
)
from scartifacts.processing import normalize_and_scale

warnings.filterwarnings('ignore')
sc.settings.verbosity = 1

OUTPUT_DIR = Path("results")
PLOTS_DIR = Path("plots")

adata = sc.read_h5ad(OUTPUT_DIR / "demultiplexed.h5ad")
adata

# %% [markdown]
# ## 1. QC metrics

# %%
adata = calculate_qc_metrics(adata)
plot_qc_metrics(adata)

# %% [markdown]
# ## 2. QC per sampling condition

# %%
for condition in ["time", "temperature", "culture"]:
    if condition not in adata.obs:
        continue
    display(summarize_qc_by_condition(adata, condition=condition))
    plot_qc_by_condition(adata, condition=condition)

# %% [markdown]
# ## 3. Doublets
#
# Hashing already removed cross-sample doublets; Scrublet also catches
# doublets formed by two cells of the same sample.

# %%
adata = detect_doublets(adata, expected_doublet_rate=DOUBLET_PARAMS["expected_doublet_rate"])
display(adata.obs.groupby("library", observed=True)["predicted_doublet"].mean())

# %% [markdown]
# ## 4. Filtering

# %%
print(CELL_FILTERS)
adata_filtered = filter_cells_and_genes(adata)
display(filtering_report(adata, adata_filtered))
display(filtering_report(adata, adata_filtered, groupby="time"))

# %% [markdown]
# ## 5. Normalization

# %%
adata = normalize_and_scale(adata_filtered)
adata.write(OUTPUT_DIR / "qc_normalized.h5ad")
print(f"✓ Saved {OUTPUT_DIR / 'qc_normalized.h5ad'}")
