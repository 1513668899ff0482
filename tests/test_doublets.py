import numpy as np
import pandas as pd
import anndata as ad

from rnaseq_recipes.doublets import detect_doublets, transfer_doublet_calls


def _make_dataset(n_cells=12):
    obs = pd.DataFrame(
        {"orig.ident": ["a"] * (n_cells // 2) + ["b"] * (n_cells - n_cells // 2)},
        index=[f"c{i}" for i in range(n_cells)],
    )
    X = np.random.default_rng(0).poisson(2.0, size=(n_cells, 30)).astype(np.float32)
    return ad.AnnData(X=X, obs=obs)


def test_small_samples_are_not_scored():
    adata = detect_doublets(_make_dataset(), min_cells=100, plot_histograms=False)

    assert (adata.obs["doublet_score"] == 0).all()
    assert not adata.obs["predicted_doublet"].any()


def test_transfer_doublet_calls_back_to_full_object():
    full = _make_dataset()
    scored = full[["c1", "c2", "c7"]].copy()
    scored.obs["doublet_score"] = [0.1, 0.6, 0.3]
    scored.obs["predicted_doublet"] = [False, True, False]

    transfer_doublet_calls(full, scored)

    assert full.obs["predicted_doublet"].dtype == bool
    assert list(full.obs.index[full.obs["predicted_doublet"]]) == ["c2"]
    assert full.obs.loc["c7", "doublet_score"] == 0.3
    # Cells left out of scoring keep the defaults
    assert full.obs.loc["c0", "doublet_score"] == 0.0
    assert not full.obs.loc["c11", "predicted_doublet"]


def _make_scorable_dataset(n_cells=150, n_genes=400, seed=0):
    """Two samples large enough to be scored and one that is skipped"""
    rng = np.random.default_rng(seed)
    gene_means = rng.lognormal(mean=0.0, sigma=1.2, size=n_genes)
    programs = rng.integers(0, 3, size=n_cells * 2 + 20)

    X = rng.poisson(gene_means, size=(len(programs), n_genes)).astype(np.float32)
    for program in range(3):
        cells = programs == program
        genes = slice(program * 20, program * 20 + 20)
        X[cells, genes] += rng.poisson(8.0, size=(cells.sum(), 20))

    samples = ["a"] * n_cells + ["b"] * n_cells + ["tiny"] * 20
    obs = pd.DataFrame({"orig.ident": samples}, index=[f"c{i}" for i in range(len(samples))])
    return ad.AnnData(X=X, obs=obs)


def test_scrublet_scores_large_samples_with_manual_threshold(tmp_path):
    adata = detect_doublets(
        _make_scorable_dataset(), manual_threshold=0.15, min_cells=100, save_dir=tmp_path
    )

    scored = adata.obs["orig.ident"] != "tiny"
    assert (adata.obs.loc[scored, "doublet_score"] > 0).all()
    assert (adata.obs.loc[~scored, "doublet_score"] == 0).all()
    # Calls follow the manual threshold, not Scrublet's own
    expected = adata.obs["doublet_score"] > 0.15
    assert (adata.obs["predicted_doublet"] == expected).all()
    assert (tmp_path / "doublet_score_histograms.png").exists()


def test_automatic_threshold_is_capped():
    adata = detect_doublets(
        _make_scorable_dataset(seed=1),
        max_auto_threshold=0.0,
        min_cells=100,
        plot_histograms=False,
    )

    scored = adata.obs["orig.ident"] != "tiny"
    assert (
        adata.obs.loc[scored, "predicted_doublet"]
        == (adata.obs.loc[scored, "doublet_score"] > 0.0)
    ).all()
    assert not adata.obs.loc[~scored, "predicted_doublet"].any()
