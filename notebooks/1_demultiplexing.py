# %% [markdown]
# # Notebook 1: Loading & Hashtag Demultiplexing
#
# Blood from each donor was split and held under different sampling conditions
# (time at room temperature before processing, storage temperature, culture).
# Samples were labelled with hashtag oligos and pooled into 10x libraries.
#
# **📥 Input:** 10x feature-barcode matrices (one per library) and the sample sheet
# **📤 Output:** `demultiplexed.h5ad` (singlets with donor/time/temperature)
# **➡️ Next:** `2_qc_normalization.ipynb`
#
# ---

# %% [markdown]
# ## 1. Setup

# %%
import warnings
import matplotlib.pyplot as plt
import scanpy as sc
import pandas as pd
from pathlib import Path
from IPython.display import display

from scartifacts.config import HASHTAG_PARAMS, get_config_summary
from scartifacts.data_loader import load_and_merge_libraries, load_sample_sheet, add_metadata
from scartifacts.demultiplex import (
    hto_demux,
    summarize_demultiplexing,
    keep_singlets,
    plot_hto_demultiplexing,
)

warnings.filterwarnings('ignore')
sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor='white')

print(get_config_summary())

# %% [markdown]
# ## 2. Parameters

# %%
DATA_DIR = Path("data")  # 🔧 directory with one 10x folder (or .h5) per library
LIBRARIES = ["L1", "L2", "L3", "L4"]  # 🔧
SAMPLE_SHEET = DATA_DIR / "sample_sheet.csv"  # 🔧 library, hashtag, donor, time, temperature
OUTPUT_DIR = Path("results")
PLOTS_DIR = Path("plots")
OUTPUT_DIR.mkdir(exist_ok=True)
PLOTS_DIR.mkdir(exist_ok=True)

# %% [markdown]
# ## 3. Load libraries
#
# Hashtag features (`Antibody Capture`) are separated from gene expression and
# kept in `adata.obsm["hto"]`.

# %%
adata = load_and_merge_libraries(DATA_DIR, LIBRARIES)
print(f"Hashtags: {list(adata.obsm['hto'].columns)}")
adata

# %% [markdown]
# ## 4. Demultiplex
#
# Centred log-ratio normalization, k-means on the normalized values, and a
# negative binomial background cutoff per hashtag at the
# `positive_quantile` quantile.

# %%
adata = hto_demux(adata, positive_quantile=HASHTAG_PARAMS["positive_quantile"])

demux_summary = summarize_demultiplexing(adata)
display(demux_summary)

# %%
plot_hto_demultiplexing(adata)

# %%
# Margin between the best and second-best hashtag
fig, ax = plt.subplots(figsize=(6, 4))
for label, values in adata.obs.groupby("hto_classification_global", observed=True)["hto_margin"]:
    ax.hist(values, bins=50, alpha=0.5, label=label)
ax.set_xlabel("CLR margin (first - second hashtag)")
ax.legend()
plt.show()

# %% [markdown]
# ## 5. Singlets and metadata

# %%
adata = keep_singlets(adata)

sample_sheet = load_sample_sheet(SAMPLE_SHEET)
display(sample_sheet)

adata = add_metadata(adata, sample_sheet)
display(pd.crosstab(adata.obs["donor"], adata.obs["time"]))

# %% [markdown]
# ## 6. Save

# %%
adata.write(OUTPUT_DIR / "demultiplexed.h5ad")
print(f"✓ Saved {OUTPUT_DIR / 'demultiplexed.h5ad'}")
