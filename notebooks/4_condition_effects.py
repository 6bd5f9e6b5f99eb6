# %% [markdown]
# # Notebook 4: Effect of Sampling Conditions
#
# For each sampling condition (time at room temperature, storage temperature):
#
# 1. Cell type composition per donor and level
# 2. kBET between each level and the reference (fresh / 4°C)
# 3. Pseudobulk differential expression per cell type against the reference
#
# **📥 Input:** `annotated.h5ad`
# **📤 Output:** `downstream/*.csv`
# **➡️ Next:** `5_signature_comparison.ipynb`
#
# ---

# %%
import warnings
import scanpy as sc
from pathlib import Path
from IPython.display import display

from scartifacts.config import REFERENCE_LEVELS
from scartifacts.annotation import celltype_composition, plot_celltype_composition
from scartifacts.batch_effects import kbet_by_condition, plot_kbet
from scartifacts.differential_expression import (
    create_condition_column,
    create_pseudobulk,
    run_de_all_celltypes,
    count_degs,
    plot_de_summary,
    plot_deg_counts,
    plot_volcano,
    plot_de_heatmap,
)

warnings.filterwarnings('ignore')
sc.settings.verbosity = 1

OUTPUT_DIR = Path("results")
DOWNSTREAM_DIR = OUTPUT_DIR / "downstream"
DOWNSTREAM_DIR.mkdir(parents=True, exist_ok=True)

CONDITION = "time"  # 🔧 "time", "temperature" or "culture"
REFERENCE = REFERENCE_LEVELS[CONDITION]
USE_DESEQ2 = True  # 🔧 False = Welch t-test on log-CPM

adata = sc.read_h5ad(OUTPUT_DIR / "annotated.h5ad")
adata = adata[adata.obs["celltype"] != "Unknown"].copy()
LEVELS = [str(lv) for lv in adata.obs[CONDITION].cat.categories]
print(f"Levels: {LEVELS} (reference {REFERENCE})")

# %% [markdown]
# ## 1. Composition

# %%
composition = celltype_composition(adata, condition=CONDITION)
plot_celltype_composition(composition, condition=CONDITION)

# %% [markdown]
# ## 2. kBET
#
# Acceptance close to 1 means cells of a level mix with the reference cells of
# the same type; a drop with time means the transcriptome has moved.

# %%
kbet_results = kbet_by_condition(adata, condition=CONDITION, reference=REFERENCE)
display(kbet_results)
plot_kbet(kbet_results, level_order=LEVELS)
kbet_results.to_csv(DOWNSTREAM_DIR / "kbet_results.csv", index=False)

# %% [markdown]
# ## 3. Pseudobulk differential expression

# %%
adata = create_condition_column(adata, condition=CONDITION, levels=LEVELS)
pb_df, sample_info_df = create_pseudobulk(adata)
display(sample_info_df.groupby(["celltype", "condition"]).size().unstack(fill_value=0))

# %%
de_results = run_de_all_celltypes(
    pb_df, sample_info_df, reference=REFERENCE, levels=LEVELS, use_deseq2=USE_DESEQ2
)
deg_counts = count_degs(de_results)
display(deg_counts)

suffix = "" if CONDITION == "time" else f"_{CONDITION}"
de_results.to_csv(DOWNSTREAM_DIR / f"de_results{suffix}.csv", index=False)
deg_counts.to_csv(DOWNSTREAM_DIR / f"deg_counts{suffix}.csv", index=False)

# %%
contrast_order = [f"{lv}_vs_{REFERENCE}" for lv in LEVELS if lv != REFERENCE]
plot_de_summary(deg_counts)
plot_deg_counts(deg_counts, contrast_order=contrast_order)

# %%
CELL_TYPE = "CD14 Monocyte"  # 🔧
CONTRAST = contrast_order[-1]
plot_volcano(de_results, CELL_TYPE, CONTRAST)
plot_de_heatmap(pb_df, sample_info_df, de_results, CELL_TYPE, CONTRAST, condition_order=LEVELS)
