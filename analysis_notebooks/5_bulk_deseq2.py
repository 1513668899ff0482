# %% [markdown]
# # Notebook 5: Bulk RNA-seq with DESeq2
#
# **Single-cell Recipes - Part 5 of 5**
#
# **📥 Input:** a gene x sample count matrix (featureCounts output or CSV/TSV) and a sample table
# **📤 Output:** `outputs/bulk/`
#
# ---
#
# ## Overview
#
# **Key Steps:**
# 1. Load counts and sample table, keep shared samples
# 2. Filter lowly expressed genes (CPM)
# 3. Fit the DESeq2 model (`~condition`)
# 4. Sample QC on variance-stabilized counts: PCA and sample distances
# 5. Contrast results with shrunken fold changes
# 6. Volcano, MA, top-gene heatmap and single-gene plots
#
# ---

# %% [markdown]
# ## 1. Setup

# %%
import warnings
from IPython.display import display
from pathlib import Path

from rnaseq_recipes.params import BULK_DE_PARAMS
from rnaseq_recipes.bulk_rnaseq import (
    load_count_matrix,
    load_sample_table,
    align_counts_and_metadata,
    filter_low_counts,
    run_deseq2,
    get_contrast_results,
    all_pairwise_contrasts,
    normalized_counts,
    variance_stabilized_counts,
    plot_sample_pca,
    plot_sample_distance_heatmap,
    plot_top_gene_heatmap,
    plot_gene_counts,
    write_results,
)
from rnaseq_recipes.differential_expression import plot_volcano, plot_ma

warnings.filterwarnings('ignore')

COUNTS_PATH = Path("../data/bulk/featureCounts.txt")  # 🔧 UPDATE THIS PATH
SAMPLES_PATH = Path("../data/bulk/samples.csv")  # 🔧 columns: sample, condition, ...
FACTOR = BULK_DE_PARAMS['design_factor']  # 🔧 column to test
REFERENCE = 'control'  # 🔧 reference level

OUTPUT_DIR = Path("outputs/bulk")
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

# %% [markdown]
# ## 2. Load Data

# %%
counts = load_count_matrix(COUNTS_PATH)
metadata = load_sample_table(SAMPLES_PATH)
counts, metadata = align_counts_and_metadata(counts, metadata)
display(metadata)

# %% [markdown]
# ## 3. Filter Lowly Expressed Genes
#
# A gene is kept when it reaches `min_cpm` counts per million in at least as many samples as the smallest group.

# %%
counts = filter_low_counts(counts, group_sizes=metadata[FACTOR].value_counts().tolist())

# %% [markdown]
# ## 4. DESeq2
#
# Size factors, dispersions and the negative binomial GLM are fitted once; every contrast is then a Wald test on the same model.

# %%
dds = run_deseq2(counts, metadata, design_factor=FACTOR, reference_level=REFERENCE)

# %% [markdown]
# ## 5. Sample QC
#
# Replicates should cluster together and separate by condition. Outlier samples show up here before they distort the DE results.

# %%
vst = variance_stabilized_counts(dds)
norm = normalized_counts(dds)

pcs = plot_sample_pca(vst, metadata, color_by=FACTOR)
dist = plot_sample_distance_heatmap(vst, metadata, color_by=FACTOR)

# %% [markdown]
# ## 6. Contrasts
#
# `logFC` holds the shrunken log2 fold change (better for ranking and plotting); the unshrunken estimate is kept in `logFC_mle`.

# %%
contrasts = all_pairwise_contrasts(sorted(metadata[FACTOR].unique()), reference_level=REFERENCE)
all_results = {}
for test_level, ref_level in contrasts:
    name = f"{test_level}_vs_{ref_level}"
    all_results[name] = get_contrast_results(dds, FACTOR, test_level, ref_level)
    write_results(all_results[name], OUTPUT_DIR, name)

name, results = next(iter(all_results.items()))
display(results.head(20))

# %% [markdown]
# ## 7. Visualization

# %%
plot_volcano(results, name, fc_threshold=BULK_DE_PARAMS['fc_threshold'])
plot_ma(results, name)

# %%
plot_top_gene_heatmap(vst, metadata, results, color_by=FACTOR)

# %%
for gene in results['gene'].head(3):
    plot_gene_counts(norm, metadata, gene, color_by=FACTOR)
