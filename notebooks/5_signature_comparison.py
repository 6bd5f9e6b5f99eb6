# %% [markdown]
# # Notebook 5: Artifact Signature & Cross-Dataset Comparison
#
# The genes induced by a long delay before processing form an artifact
# signature. Here it is:
#
# - scored on every cell, with "affected" cells flagged against fresh samples
# - compared with the temperature signature and with published gene lists
# - correlated at the fold-change level with a second dataset
# - tested for pathway enrichment
#
# **📥 Input:** `annotated.h5ad`, `downstream/de_results.csv` (time and temperature runs)
#
# ---

# %%
import warnings
import scanpy as sc
import pandas as pd
from pathlib import Path
from IPython.display import display

from scartifacts.config import REFERENCE_LEVELS, SIGNATURE_PARAMS
from scartifacts.data_loader import parse_time_hours
from scartifacts.signatures import (
    derive_signature,
    read_gene_list,
    score_signature,
    flag_affected_cells,
    compare_signatures,
    compare_fold_changes,
    plot_signature_scores,
    plot_signature_overlap,
)
from scartifacts.enrichment import run_enrichr, run_prerank, plot_enrichment

warnings.filterwarnings('ignore')
sc.settings.verbosity = 1

OUTPUT_DIR = Path("results")
DOWNSTREAM_DIR = OUTPUT_DIR / "downstream"

adata = sc.read_h5ad(OUTPUT_DIR / "annotated.h5ad")
de_time = pd.read_csv(DOWNSTREAM_DIR / "de_results.csv")
de_temperature = pd.read_csv(DOWNSTREAM_DIR / "de_results_temperature.csv")  # 🔧 run notebook 4 with CONDITION="temperature"

# %% [markdown]
# ## 1. Signatures

# %%
# Longest delay
time_contrast = max(de_time["contrast"].unique(), key=lambda c: parse_time_hours(c.split("_vs_")[0]))
time_signature = derive_signature(de_time, contrast=time_contrast, direction="up")
temperature_signature = derive_signature(de_temperature, direction="up")

published = {}
for path in sorted(Path("signatures").glob("*.txt")):  # 🔧 one gene per line
    published[path.stem] = read_gene_list(path)

# %% [markdown]
# ## 2. Scoring & affected cells

# %%
score_col = score_signature(adata, time_signature, name="time_artifact")
affected = flag_affected_cells(
    adata,
    score_col,
    condition="time",
    reference=REFERENCE_LEVELS["time"],
    percentile=SIGNATURE_PARAMS["score_percentile"],
)
display(affected)
plot_signature_scores(adata, score_col, condition="time", hue="celltype")

# %% [markdown]
# ## 3. Overlap between signatures

# %%
signatures = {"time": time_signature, "temperature": temperature_signature, **published}
overlap = compare_signatures(signatures, universe_size=adata.raw.n_vars)
display(overlap.drop(columns="shared_genes"))
plot_signature_overlap(overlap)

# %% [markdown]
# ## 4. Fold-change agreement with a second dataset

# %%
EXTERNAL_DE = Path("external/de_results.csv")  # 🔧 same columns as de_results.csv
if EXTERNAL_DE.exists():
    de_external = pd.read_csv(EXTERNAL_DE)
    merged, summary = compare_fold_changes(
        de_time[de_time["contrast"] == time_contrast], de_external
    )
    display(pd.Series(summary))

# %% [markdown]
# ## 5. Enrichment

# %%
enr = run_enrichr(time_signature)
plot_enrichment(enr)

# %%
gsea = run_prerank(de_time[de_time["contrast"] == time_contrast])
plot_enrichment(gsea)
