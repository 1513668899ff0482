# %% [markdown]
# # Notebook 4: Differential Expression Between Conditions
#
# **Single-cell Recipes - Part 4 of 5**
#
# **📥 Input:** `outputs/annotated_data.h5ad`, `outputs/filtered_data.h5ad` (raw counts)
# **📤 Output:** `outputs/differential_expression_results/`
#
# ---
#
# ## Overview
#
# Two complementary views of the same question:
#
# 1. **Cell-level** Wilcoxon test within one cell type (quick, but treats cells as independent replicates)
# 2. **Pseudobulk** DESeq2: counts summed per sample and cell type, samples are the replicates
#
# ---

# %% [markdown]
# ## 1. Setup

# %%
import warnings
from IPython.display import display
import scanpy as sc
import pandas as pd
from pathlib import Path

from rnaseq_recipes import params
from rnaseq_recipes.markers import find_condition_de
from rnaseq_recipes.differential_expression import (
    create_pseudobulk,
    run_de_for_celltype,
    plot_de_summary,
    plot_de_heatmap,
    plot_volcano,
    plot_ma,
)

warnings.filterwarnings('ignore')
sc.settings.verbosity = 1

OUTPUT_DIR = Path('outputs/differential_expression_results/')
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

adata = sc.read_h5ad("outputs/annotated_data.h5ad")
counts_adata = sc.read_h5ad("outputs/filtered_data.h5ad")
print(f"Loaded data: {adata.n_obs} cells, {adata.n_vars} genes")
print(adata.obs['condition'].value_counts())

REFERENCE = adata.obs['condition'].cat.categories[0]  # 🔧 reference condition
CONTRASTS = [
    (f"{level}_vs_{REFERENCE}", level, REFERENCE)
    for level in adata.obs['condition'].cat.categories
    if level != REFERENCE
]
print(f"Contrasts: {[c[0] for c in CONTRASTS]}")

# %% [markdown]
# ## 2. Cell-level Test

# %%
CELLTYPE = 'Mono'  # 🔧 cell type to inspect
name, group1, group2 = CONTRASTS[0]
cell_de = find_condition_de(adata, CELLTYPE, 'condition', group1, group2)
display(cell_de.head(15))

# %% [markdown]
# ## 3. Pseudobulk Samples
#
# Raw counts are summed per `orig.ident` x `celltype`; groups with fewer than `min_cells` cells are dropped.

# %%
pb_df, sample_info_df = create_pseudobulk(
    adata,
    min_cells=params.DE_PARAMS['min_cells'],
    meta_cols=['condition'],
    counts_adata=counts_adata,
)
display(sample_info_df.groupby(['celltype', 'condition'], observed=True).size().unstack())

# %% [markdown]
# ## 4. DESeq2 per Cell Type
#
# Cell types with fewer than two samples per condition, or too few expressed genes, are skipped.

# %%
de_results_list = []
for cell_type in sorted(sample_info_df['celltype'].unique()):
    de_result = run_de_for_celltype(
        pb_df, sample_info_df, cell_type, CONTRASTS, de_params=params.DE_PARAMS
    )
    if de_result is not None:
        de_results_list.append(de_result)

all_de_results = pd.concat(de_results_list, ignore_index=True)
all_de_results.to_csv(OUTPUT_DIR / "pseudobulk_de_results.csv", index=False)
print(f"✓ Saved {len(all_de_results):,} results")

# %% [markdown]
# ## 5. Visualization

# %%
summary = plot_de_summary(
    all_de_results,
    fdr_threshold=params.DE_PARAMS['fdr_threshold'],
    fc_threshold=params.DE_PARAMS['fc_threshold'],
)

# %%
ct_results = all_de_results[
    (all_de_results['cell_type'] == CELLTYPE) & (all_de_results['contrast'] == name)
]
plot_volcano(ct_results, f"{CELLTYPE} - {name}", fc_threshold=params.DE_PARAMS['fc_threshold'])
plot_ma(ct_results, f"{CELLTYPE} - {name}")
plot_de_heatmap(pb_df, sample_info_df, all_de_results, CELLTYPE, name, top_n=40)

# %%
top_genes = ct_results.nsmallest(6, 'adj.P.Val')['gene'].tolist()
sc.pl.violin(
    adata[adata.obs['celltype'] == CELLTYPE],
    top_genes,
    groupby='condition',
    use_raw=True,
)
