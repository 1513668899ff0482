# %% [markdown]
# # Notebook 3: Marker Genes & Cell Type Annotation
#
# **Single-cell Recipes - Part 3 of 5**
#
# **📥 Input:** `outputs/clustered_data.h5ad`
# **📤 Output:** `outputs/annotated_data.h5ad`, `outputs/markers/`
#
# ---
#
# ## Overview
#
# **Key Steps:**
# 1. Rank marker genes per cluster
# 2. Find markers conserved across conditions
# 3. Compare cluster markers with known marker panels
# 4. Annotate clusters, either from a manual table or from marker scores
# 5. Inspect cluster purity and cell type composition per sample
#
# ---

# %% [markdown]
# ## 1. Setup

# %%
import warnings
from IPython.display import display
import scanpy as sc
from pathlib import Path

from rnaseq_recipes import params
from rnaseq_recipes.data_loader import load_annotation_table
from rnaseq_recipes.markers import (
    compute_top_markers_per_cluster,
    find_conserved_markers,
    find_all_conserved_markers,
    compare_top_markers_to_expected,
    plot_marker_genes,
)
from rnaseq_recipes.annotation import (
    MARKER_GENES,
    annotate_clusters_from_table,
    assign_celltypes_by_cluster_scores,
    assign_celltypes_by_scores,
    create_cluster_aggregated_labels,
    celltype_proportions,
    plot_cell_type_summary,
)
from rnaseq_recipes.processing import plot_embeddings

warnings.filterwarnings('ignore')
sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor='white')

OUTPUT_DIR = Path("outputs")
MARKERS_DIR = OUTPUT_DIR / "markers"
MARKERS_DIR.mkdir(parents=True, exist_ok=True)
ANNOTATION_CSV = Path("../data/cluster_annotation.csv")  # 🔧 columns: cluster, celltype

adata = sc.read_h5ad(OUTPUT_DIR / "clustered_data.h5ad")
print(f"Loaded data: {adata.n_obs} cells, {adata.n_vars} genes")

# %% [markdown]
# ## 2. Cluster Markers
#
# Each cluster is tested against all other cells (Wilcoxon rank-sum on log-normalized expression).

# %%
markers_df = compute_top_markers_per_cluster(
    adata,
    method=params.MARKER_PARAMS['method'],
    n_top=params.MARKER_PARAMS['n_top'],
    pval_adj_cutoff=params.MARKER_PARAMS['pval_adj_cutoff'],
    min_logfc=params.MARKER_PARAMS['logfc_threshold'],
    min_pct=params.MARKER_PARAMS['min_pct'],
    save_dir=MARKERS_DIR,
    plot=True,
)
display(markers_df.groupby('group').head(5))

# %% [markdown]
# ## 3. Conserved Markers
#
# A conserved marker is up in the cluster in every condition. The cluster is tested separately within each condition and the per-condition p-values are combined (minimum p-value, Tippett) next to the maximum p-value. Clusters too small in one condition fall back to the all-cells test (`fallback=True`).

# %%
conserved_0 = find_conserved_markers(adata, '0', condition_key='condition')
display(conserved_0.head(10))

# %%
conserved_all = find_all_conserved_markers(adata, condition_key='condition', save_dir=MARKERS_DIR)

# %% [markdown]
# ## 4. Known Marker Panels
#
# Overlap between each cluster's top genes and the marker panels in `MARKER_GENES`.

# %%
overlap = compare_top_markers_to_expected(adata, MARKER_GENES, markers_df=markers_df, plot=False)
display(overlap.pivot(index='group', columns='panel', values='precision').round(2))

plot_marker_genes(adata, MARKER_GENES, groupby='leiden', kind='dotplot')

# %% [markdown]
# ## 5. Annotation
#
# If a manual table exists it is used as is. Otherwise labels come from marker panel scores:
# - **🔧 LABEL_MODE = 'cell'**: every cell gets its best-scoring panel, then each cluster is summarized by its dominant type (`Mixed` below the purity threshold)
# - **LABEL_MODE = 'cluster'**: whole clusters are labelled from their median scores; clusters whose best score does not clearly beat the runner-up stay `Unknown`

# %%
LABEL_MODE = 'cell'  # 🔧 ADJUSTABLE: 'cell' or 'cluster'

if ANNOTATION_CSV.exists():
    mapping = load_annotation_table(ANNOTATION_CSV)
    unmapped = annotate_clusters_from_table(adata, mapping)
elif LABEL_MODE == 'cell':
    assign_celltypes_by_scores(adata, MARKER_GENES, margin=0.05)
    mixed = create_cluster_aggregated_labels(adata, celltype_col='celltype', purity_threshold=0.6)
else:
    cluster_scores = assign_celltypes_by_cluster_scores(adata, MARKER_GENES, margin=0.05)
    display(cluster_scores[['label', 'margin']])

# %%
color_keys = ['celltype', 'leiden'] + (['celltype_cluster', 'cluster_purity'] if 'cluster_purity' in adata.obs else [])
plot_embeddings(adata, color_keys=color_keys)
plot_marker_genes(adata, MARKER_GENES, groupby='celltype', kind='matrixplot')

# %% [markdown]
# ## 6. Composition

# %%
display(celltype_proportions(adata, groupby='condition').round(3))
plot_cell_type_summary(adata, groupby='orig.ident')
plot_cell_type_summary(adata, groupby='condition')

# %% [markdown]
# ## 7. Save

# %%
output_path = OUTPUT_DIR / "annotated_data.h5ad"
adata.write(output_path)
print(f"✓ Saved annotated data to {output_path}")
