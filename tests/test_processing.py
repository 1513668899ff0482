import numpy as np
import pytest

from rnaseq_recipes import processing
from rnaseq_recipes.processing import (
    choose_leiden_resolution,
    compute_batch_mixing,
    integrate_samples,
    normalize_and_scale,
    plot_embeddings,
    plot_split_umap,
    regress_out_cell_cycle,
    run_neighbors_umap_clustering,
    run_pca,
    score_cell_cycle,
)


def test_normalize_keeps_counts_and_full_raw(pbmc_like):
    n_genes = pbmc_like.n_vars
    adata = normalize_and_scale(pbmc_like, n_top_genes=40)

    assert "counts" in adata.layers
    assert adata.raw.n_vars == n_genes
    assert adata.n_vars < n_genes
    # Scaled values are clipped
    assert np.asarray(adata.X).max() <= 10 + 1e-6
    # Raw counts of the retained genes are untouched integers
    counts = adata.layers["counts"]
    assert np.allclose(counts, np.round(counts))


def test_normalize_pearson_residuals(pbmc_like):
    adata = normalize_and_scale(pbmc_like, method="pearson_residuals", n_top_genes=40)

    assert 0 < adata.n_vars <= 40
    assert adata.raw is not None
    assert "counts" in adata.layers


def test_normalize_unknown_method(pbmc_like):
    with pytest.raises(ValueError):
        normalize_and_scale(pbmc_like, method="sctransform")


def test_cell_cycle_scoring_and_regression(pbmc_like):
    adata = normalize_and_scale(pbmc_like, n_top_genes=60)
    s_genes = [f"GENE{i}" for i in range(0, 10)]
    g2m_genes = [f"GENE{i}" for i in range(10, 20)]

    adata = score_cell_cycle(adata, s_genes, g2m_genes)
    assert {"S_score", "G2M_score", "phase"} <= set(adata.obs.columns)
    assert set(adata.obs["phase"]) <= {"G1", "S", "G2M"}

    adata = regress_out_cell_cycle(adata)
    assert np.isfinite(np.asarray(adata.X)).all()


def test_cell_cycle_scoring_without_known_genes(pbmc_like):
    adata = normalize_and_scale(pbmc_like, n_top_genes=60)
    with pytest.raises(ValueError):
        score_cell_cycle(adata, ["Mcm5"], ["Top2a"])
    with pytest.raises(KeyError):
        regress_out_cell_cycle(adata)


def test_run_pca_caps_components(pbmc_like):
    adata = normalize_and_scale(pbmc_like, n_top_genes=30)
    adata = run_pca(adata, n_comps=50)

    assert adata.obsm["X_pca"].shape == (adata.n_obs, min(adata.shape) - 1)


def test_integrate_samples_short_circuits(pbmc_like):
    adata = normalize_and_scale(pbmc_like, n_top_genes=60)
    with pytest.raises(KeyError):
        integrate_samples(adata)

    adata = run_pca(adata, n_comps=10)
    assert integrate_samples(adata, method="none") == "X_pca"

    single = adata[adata.obs["orig.ident"] == "ctrl_1"].copy()
    assert integrate_samples(single, method="harmony") == "X_pca"

    with pytest.raises(ValueError):
        integrate_samples(adata, method="cca")
    with pytest.raises(KeyError):
        integrate_samples(adata, batch_key="lane")


def test_clustering_separates_cell_types(clustered):
    assert "X_umap" in clustered.obsm
    assert "leiden" in clustered.obs
    assert clustered.obs["leiden"].nunique() >= 3

    # Every cluster is dominated by a single simulated cell type
    for _, group in clustered.obs.groupby("leiden", observed=True):
        assert group["true_type"].value_counts(normalize=True).iloc[0] > 0.9


def test_choose_leiden_resolution(clustered, tmp_path):
    grid = [0.1, 0.3, 0.6]
    chosen = choose_leiden_resolution(clustered, resolution_grid=grid, save_dir=tmp_path)

    assert chosen in grid
    assert "leiden_0.30" in clustered.obs
    assert (tmp_path / "leiden_resolution_sweep.csv").exists()


def test_compute_batch_mixing(clustered):
    mixing = compute_batch_mixing(clustered, batch_key="orig.ident")

    assert mixing["n_cells"].sum() == clustered.n_obs
    assert mixing["mixing_entropy"].between(0, 1 + 1e-9).all()
    # Each simulated cell type is spread evenly across the four samples
    assert (mixing["mixing_entropy"] > 0.7).all()

    with pytest.raises(KeyError):
        compute_batch_mixing(clustered, batch_key="lane")


def test_embedding_plots_are_saved(clustered, tmp_path):
    plot_embeddings(clustered, color_keys=["leiden", "orig.ident"], save_dir=tmp_path)
    plot_split_umap(clustered, split_key="condition", save_dir=tmp_path)

    assert (tmp_path / "umap_embeddings.png").exists()
    assert len(list(tmp_path.glob("*.png"))) == 2


def test_harmony_integration_adds_corrected_embedding(pbmc_like):
    adata = normalize_and_scale(pbmc_like, n_top_genes=60)
    adata = run_pca(adata, n_comps=10)

    rep = integrate_samples(adata, batch_key="orig.ident", method="harmony", max_iter=5)

    assert rep == "X_pca_harmony"
    corrected = adata.obsm["X_pca_harmony"]
    assert corrected.shape == adata.obsm["X_pca"].shape
    assert np.isfinite(corrected).all()

    adata = run_neighbors_umap_clustering(adata, use_rep=rep, n_pcs=10, resolution=0.3)
    for _, group in adata.obs.groupby("leiden", observed=True):
        assert group["true_type"].value_counts(normalize=True).iloc[0] > 0.9


def test_auto_resolution_clusters_once_per_grid_value(clustered, monkeypatch):
    calls = []
    real_leiden = processing._leiden

    def counting_leiden(adata, resolution, key_added="leiden"):
        calls.append(key_added)
        real_leiden(adata, resolution, key_added=key_added)

    monkeypatch.setattr(processing, "_leiden", counting_leiden)

    run_neighbors_umap_clustering(
        clustered, n_pcs=10, auto_resolution=True, resolution_grid=[0.2, 0.4]
    )

    assert calls == ["leiden_0.20", "leiden_0.40"]
    chosen = clustered.uns["leiden_optimal_resolution"]
    assert (clustered.obs["leiden"] == clustered.obs[f"leiden_{chosen:.2f}"]).all()
