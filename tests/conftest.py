import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import anndata as ad
import pytest

CELLTYPE_MARKERS = {
    "Mono": ["CD14", "LYZ", "S100A8", "S100A9", "FCN1"],
    "B": ["MS4A1", "CD79A", "CD79B"],
    "NK": ["GNLY", "NKG7", "KLRD1", "PRF1"],
}


def make_pbmc_like(n_per_group=20, n_filler=80, seed=0):
    """Raw-count AnnData with three well separated cell types

    Four samples (two per condition), each holding n_per_group cells of
    every cell type. Marker genes of a cell type are strongly expressed in
    that type only.
    """
    rng = np.random.default_rng(seed)
    marker_genes = [g for genes in CELLTYPE_MARKERS.values() for g in genes]
    genes = marker_genes + ["MT-CO1", "MT-ND1", "RPS3", "RPL5"] + [
        f"GENE{i}" for i in range(n_filler)
    ]
    samples = {"ctrl_1": "CTRL", "ctrl_2": "CTRL", "stim_1": "STIM", "stim_2": "STIM"}

    blocks, obs_rows = [], []
    for sample, condition in samples.items():
        for celltype, markers in CELLTYPE_MARKERS.items():
            X = rng.poisson(1.0, size=(n_per_group, len(genes))).astype(np.float32)
            for gene in markers:
                X[:, genes.index(gene)] = rng.poisson(30.0, size=n_per_group)
            blocks.append(X)
            for i in range(n_per_group):
                obs_rows.append(
                    {
                        "cell": f"{sample}_{celltype}_{i}",
                        "orig.ident": sample,
                        "condition": condition,
                        "true_type": celltype,
                    }
                )

    obs = pd.DataFrame(obs_rows).set_index("cell")
    obs.index.name = None
    for col in ("orig.ident", "condition", "true_type"):
        obs[col] = pd.Categorical(obs[col])
    return ad.AnnData(X=np.vstack(blocks), obs=obs, var=pd.DataFrame(index=genes))


@pytest.fixture
def pbmc_like():
    return make_pbmc_like()


@pytest.fixture
def clustered(pbmc_like):
    """Log-normalized data with PCA, UMAP and Leiden clusters"""
    from rnaseq_recipes.processing import (
        normalize_and_scale,
        run_neighbors_umap_clustering,
        run_pca,
    )

    adata = normalize_and_scale(pbmc_like, n_top_genes=60)
    adata = run_pca(adata, n_comps=20, save_dir=None)
    adata = run_neighbors_umap_clustering(
        adata, n_pcs=10, n_neighbors=15, resolution=0.3
    )
    return adata
