# %% [markdown]
# # Notebook 1: Loading, Quality Control & Filtering
#
# **Single-cell Recipes - Part 1 of 5**
#
# **📥 Input:** Cell Ranger output folders (or CellBender `.h5` files), one per sample, plus a per-sample metadata table
# **📤 Output:** `outputs/filtered_data.h5ad`
#
# ---
#
# ## Overview
#
# This notebook loads every sample into a single AnnData object, attaches the experimental metadata and removes low-quality cells and doublets.
#
# **Key Steps:**
# 1. Load and merge samples (barcodes are prefixed with the sample name)
# 2. Add per-sample metadata and build the `condition` column
# 3. Calculate QC metrics (genes, UMIs, mitochondrial and ribosomal %, complexity)
# 4. Detect doublets per sample with Scrublet
# 5. Filter cells and genes
#
# ---

# %% [markdown]
# ## 1. Setup

# %%
# !pip install -q -e ..

import warnings
from IPython.display import display
import matplotlib
import matplotlib.pyplot as plt
import scanpy as sc
from pathlib import Path

from rnaseq_recipes import params
from rnaseq_recipes.data_loader import (
    load_and_merge_samples,
    read_sample_metadata,
    add_metadata,
)
from rnaseq_recipes.qc_utils import (
    calculate_qc_metrics,
    summarize_qc_by_sample,
    compute_adaptive_thresholds,
    flag_outlier_cells,
    plot_qc_metrics,
    plot_qc_by_group,
    filter_cells_and_genes,
)
from rnaseq_recipes.doublets import detect_doublets, transfer_doublet_calls
from rnaseq_recipes.differential_expression import create_condition_column

warnings.filterwarnings('ignore')
sc.settings.verbosity = 3
sc.settings.set_figure_params(dpi=80, facecolor='white')
matplotlib.rcParams['figure.figsize'] = (8, 6)

print("✓ Setup complete!")
print(f"Scanpy version: {sc.__version__}")

# %% [markdown]
# ## 2. Parameter Configuration
#
# All thresholds live in `rnaseq_recipes/params.py`. Pick a QC preset and the organism here, then override single values if needed.

# %%
BASE_PATH = Path("../data/")  # 🔧 UPDATE THIS PATH
SAMPLE_NAMES = ["ctrl_1", "ctrl_2", "stim_1", "stim_2"]  # 🔧 CUSTOMIZE YOUR SAMPLES
FILE_PATTERN = None  # 🔧 e.g. "_cellbender_filtered.h5" for CellBender output
METADATA_CSV = BASE_PATH / "samples.csv"  # 🔧 one row per sample, column 'orig.ident'
CONDITION_COLS = ["stim"]  # 🔧 metadata columns that define the condition

params.apply_preset('default')  # Options: 'default', 'stringent', 'permissive'
params.set_species('human')  # Options: 'human', 'mouse'

# 🔧 OPTIONAL: Override specific parameters here
# params.CELL_FILTERS['max_mt_pct'] = 15
# params.ADAPTIVE_FILTERING['use_adaptive'] = True
params.validate_filters()

OUTPUT_DIR = Path("outputs")
PLOTS_DIR = Path("plots")
OUTPUT_DIR.mkdir(exist_ok=True)
PLOTS_DIR.mkdir(exist_ok=True)

print(params.get_filter_summary())

# %% [markdown]
# ## 3. Load & Merge Samples
#
# Each sample is read from `BASE_PATH/<sample>` (a `filtered_feature_bc_matrix` folder, a Cell Ranger run folder or an `.h5` file). Cells are tagged with `orig.ident`.

# %%
adata = load_and_merge_samples(BASE_PATH, SAMPLE_NAMES, FILE_PATTERN)
print(adata)

# %%
metadata_df = read_sample_metadata(METADATA_CSV)
display(metadata_df)

adata = add_metadata(adata, metadata_df)
adata = create_condition_column(adata, CONDITION_COLS)
print(adata.obs['condition'].value_counts())

# %% [markdown]
# ## 4. QC Metrics
#
# - `n_genes_by_counts`: genes detected per cell
# - `total_counts`: UMIs per cell
# - `percent_mt` / `percent_ribo`: share of mitochondrial / ribosomal reads
# - `log10_genes_per_umi`: complexity; low values flag cells dominated by few transcripts
#
# Dashed lines show the active thresholds.

# %%
adata = calculate_qc_metrics(adata)
plot_qc_metrics(adata)
plot_qc_by_group(adata, groupby='orig.ident')

# %%
qc_summary = summarize_qc_by_sample(adata)
display(qc_summary)

# %% [markdown]
# ### Optional: sample-specific adaptive thresholds
#
# Samples differ in depth, so fixed cutoffs can be too strict for some and too loose for others. Cells further than `iqr_multiplier` IQRs from their sample's median (log scale for counts) are flagged as `qc_outlier` and removed by the filter below.

# %%
if params.ADAPTIVE_FILTERING['use_adaptive']:
    thresholds = compute_adaptive_thresholds(adata)
    display(thresholds)
    adata = flag_outlier_cells(adata, thresholds)

# %% [markdown]
# ## 5. Doublet Detection
#
# Scrublet runs on each sample separately, using only cells that already pass the basic gene and mitochondrial filters. Calls are then transferred back to the full object.

# %%
filters = params.CELL_FILTERS
obs = adata.obs
keep = (
    (obs.n_genes_by_counts >= filters['min_genes'])
    & (obs.n_genes_by_counts < filters['max_genes'])
    & (obs.percent_mt < filters['max_mt_pct'])
)
adata_for_doublets = adata[keep.to_numpy()].copy()
print(f"Cells for doublet detection: {adata_for_doublets.n_obs} (from {adata.n_obs})")

adata_for_doublets = detect_doublets(adata_for_doublets, save_dir=PLOTS_DIR)
adata = transfer_doublet_calls(adata, adata_for_doublets)

# %%
fig, ax = plt.subplots(figsize=(8, 4))
adata.obs.groupby('orig.ident', observed=True)['predicted_doublet'].mean().mul(100).plot(
    kind='bar', ax=ax
)
ax.set_ylabel('Predicted doublets (%)')
plt.show()

# %% [markdown]
# ## 6. Filter Cells & Genes

# %%
n_before = adata.n_obs
adata = filter_cells_and_genes(
    adata,
    min_genes=filters['min_genes'],
    max_genes=filters['max_genes'],
    max_mt_pct=filters['max_mt_pct'],
    min_counts=filters['min_counts'],
    max_counts=filters['max_counts'],
    max_ribo_pct=filters['max_ribo_pct'],
    min_complexity=filters['min_complexity'],
)
print(f"Retained {adata.n_obs / n_before * 100:.1f}% of cells")

# %%
display(summarize_qc_by_sample(adata))

# %% [markdown]
# ## 7. Save

# %%
output_path = OUTPUT_DIR / "filtered_data.h5ad"
adata.write(output_path)
print(f"✓ Saved filtered data to {output_path}")
