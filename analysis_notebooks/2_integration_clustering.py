# %% [markdown]
# # Notebook 2: Normalization, Integration & Clustering
#
# **Single-cell Recipes - Part 2 of 5**
#
# **📥 Input:** `outputs/filtered_data.h5ad`
# **📤 Output:** `outputs/clustered_data.h5ad`
#
# ---
#
# ## Overview
#
# **Key Steps:**
# 1. Normalize (log-normalization or Pearson residuals) and select variable genes
# 2. Score (and optionally regress out) cell cycle phase
# 3. PCA and elbow plot
# 4. Integrate samples with Harmony
# 5. Neighborhood graph, UMAP and Leiden clustering
# 6. Check how well samples mix within clusters
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
from rnaseq_recipes.data_loader import load_cell_cycle_genes
from rnaseq_recipes.processing import (
    normalize_and_scale,
    score_cell_cycle,
    regress_out_cell_cycle,
    run_pca,
    integrate_samples,
    run_neighbors_umap_clustering,
    choose_leiden_resolution,
    compute_batch_mixing,
    plot_embeddings,
    plot_split_umap,
)
from rnaseq_recipes.doublets import plot_doublet_scores_umap

warnings.filterwarnings('ignore')
sc.settings.verbosity = 3
sc.settings.set_figure_params(dpi=80, facecolor='white')

OUTPUT_DIR = Path("outputs")
PLOTS_DIR = Path("plots")
CELL_CYCLE_GENES = Path("../data/regev_lab_cell_cycle_genes.txt")  # 🔧 optional

adata = sc.read_h5ad(OUTPUT_DIR / "filtered_data.h5ad")
print(f"Loaded data: {adata.n_obs} cells, {adata.n_vars} genes")

# %% [markdown]
# ## 2. Normalization
#
# - `lognorm`: scale each cell to `target_sum` counts, log1p, pick highly variable genes (per sample), scale to unit variance
# - `pearson_residuals`: analytic Pearson residuals of a negative binomial model; no log transform or scaling needed
#
# Raw counts stay in `layers['counts']`, log-normalized values for all genes in `.raw`.

# %%
norm = params.NORMALIZATION_PARAMS
adata = normalize_and_scale(
    adata,
    method=norm['method'],  # 🔧 'lognorm' or 'pearson_residuals'
    target_sum=norm['target_sum'],
    n_top_genes=norm['n_top_genes'],
    batch_key='orig.ident',
    max_value=norm['max_scale_value'],
)

# %% [markdown]
# ## 3. Cell Cycle
#
# Cells are scored against S and G2/M gene lists. Regressing the scores out removes cycling as a source of clustering, at the cost of also removing real proliferation differences.

# %%
if CELL_CYCLE_GENES.exists():
    s_genes, g2m_genes = load_cell_cycle_genes(CELL_CYCLE_GENES)
    adata = score_cell_cycle(adata, s_genes, g2m_genes)
    print(adata.obs['phase'].value_counts())
    if norm['regress_cell_cycle']:
        adata = regress_out_cell_cycle(adata, max_value=norm['max_scale_value'])

# %% [markdown]
# ## 4. PCA
#
# The elbow plot shows how much variance each component explains; the dashed line marks the number of PCs used downstream.

# %%
clustering = params.CLUSTERING_PARAMS
adata = run_pca(adata, n_comps=clustering['n_pcs_compute'], n_pcs_marked=clustering['n_pcs'])
sc.pl.pca(adata, color=['orig.ident', 'condition'])

# %% [markdown]
# ## 5. Integration
#
# Harmony corrects the PCA embedding so that cells group by type instead of by sample. Set `method='none'` to skip and compare.

# %%
use_rep = integrate_samples(
    adata,
    batch_key=params.INTEGRATION_PARAMS['batch_key'],
    method=params.INTEGRATION_PARAMS['method'],
    max_iter=params.INTEGRATION_PARAMS['max_iter_harmony'],
)
print(f"Downstream embedding: {use_rep}")

# %% [markdown]
# ## 6. Clustering
#
# Optionally sweep Leiden resolutions first; the sweep scores each resolution by silhouette and penalizes tiny clusters.

# %%
# 🔧 OPTIONAL resolution sweep
# sc.pp.neighbors(adata, n_neighbors=clustering['n_neighbors'], use_rep=use_rep)
# best_res = choose_leiden_resolution(adata, use_rep=use_rep, save_dir=PLOTS_DIR)

adata = run_neighbors_umap_clustering(
    adata,
    use_rep=use_rep,
    n_pcs=clustering['n_pcs'],
    n_neighbors=clustering['n_neighbors'],
    resolution=clustering['resolution'],  # 🔧 or best_res
    min_cluster_size=clustering['min_cluster_size'],
)

# %%
plot_embeddings(adata, color_keys=['leiden', 'orig.ident', 'condition'])
plot_split_umap(adata, split_key='condition', color='leiden')
plot_doublet_scores_umap(adata)

if 'phase' in adata.obs:
    plot_embeddings(adata, color_keys=['phase', 'S_score', 'G2M_score'])

# %% [markdown]
# ## 7. Sample Mixing
#
# Entropy near 1 means a cluster contains cells from all samples in equal measure; near 0 means it comes from a single sample (a possible batch artifact).

# %%
mixing = compute_batch_mixing(adata, batch_key='orig.ident', cluster_key='leiden')
display(mixing.sort_values('mixing_entropy'))

# %% [markdown]
# ## 8. Save

# %%
output_path = OUTPUT_DIR / "clustered_data.h5ad"
adata.write(output_path)
print(f"✓ Saved clustered data to {output_path}")
