import numpy as np
import pandas as pd
import pytest

from rnaseq_recipes.differential_expression import (
    RESULT_COLUMNS,
    create_condition_column,
    create_pseudobulk,
    filter_genes_for_de,
    flag_significant,
    plot_de_heatmap,
    plot_de_summary,
    plot_ma,
    plot_volcano,
    run_de_for_celltype,
    run_de_with_deseq2,
    run_de_with_ttest,
)

DE_PARAMS = {
    "min_cells": 10,
    "min_count": 5,
    "min_samples_expr": 2,
    "min_samples_per_group": 2,
    "min_genes": 20,
    "fdr_threshold": 0.05,
    "fc_threshold": 0.5,
}

UP_GENES = ["GENE0", "GENE1", "GENE2"]


def _make_pseudobulk(n_per_group=5, n_genes=200, seed=0):
    """Negative binomial pseudobulk counts with three genes up in STIM"""
    rng = np.random.default_rng(seed)
    genes = [f"GENE{i}" for i in range(n_genes)]
    samples = [f"ctrl{i}--T" for i in range(n_per_group)] + [
        f"stim{i}--T" for i in range(n_per_group)
    ]
    conditions = ["CTRL"] * n_per_group + ["STIM"] * n_per_group

    mu = rng.uniform(50, 500, size=(n_genes, 1)) * np.ones((1, len(samples)))
    mu[:3, n_per_group:] *= 8
    size = 10.0
    counts = rng.negative_binomial(size, size / (size + mu))

    pb_df = pd.DataFrame(counts, index=genes, columns=samples)
    sample_info = pd.DataFrame(
        {
            "group_id": samples,
            "sample_id": [s.split("--")[0] for s in samples],
            "celltype": "T",
            "n_cells": 50,
            "condition": conditions,
        }
    )
    return pb_df, sample_info


def test_create_condition_column(pbmc_like):
    pbmc_like.obs["genotype"] = np.where(
        pbmc_like.obs["orig.ident"].astype(str).str.endswith("1"), "WT", "KO"
    )

    create_condition_column(
        pbmc_like, ["genotype", "condition"], order=["WT_CTRL", "KO_CTRL", "WT_STIM", "KO_STIM"]
    )

    assert list(pbmc_like.obs["condition"].cat.categories) == [
        "WT_CTRL", "KO_CTRL", "WT_STIM", "KO_STIM"
    ]
    assert pbmc_like.obs["condition"].cat.ordered

    with pytest.raises(KeyError):
        create_condition_column(pbmc_like, ["sex"])


def test_create_pseudobulk_sums_counts(pbmc_like):
    pb_df, info = create_pseudobulk(
        pbmc_like, celltype_col="true_type", min_cells=10, meta_cols=["condition"]
    )

    assert pb_df.shape == (pbmc_like.n_vars, 12)
    assert set(info.columns) >= {"group_id", "sample_id", "celltype", "n_cells", "condition"}
    assert (info["n_cells"] == 20).all()

    mask = (
        (pbmc_like.obs["orig.ident"] == "stim_2") & (pbmc_like.obs["true_type"] == "NK")
    ).to_numpy()
    expected = np.asarray(pbmc_like.X[mask].sum(axis=0)).ravel()
    np.testing.assert_allclose(pb_df["stim_2--NK"].to_numpy(), expected)
    assert info.set_index("group_id").loc["stim_2--NK", "condition"] == "STIM"


def test_create_pseudobulk_prefers_counts_layer(pbmc_like):
    adata = pbmc_like.copy()
    adata.layers["counts"] = adata.X.copy()
    adata.X = np.log1p(adata.X)

    pb_df, _ = create_pseudobulk(adata, celltype_col="true_type", meta_cols=[])
    assert np.allclose(pb_df.to_numpy(), np.round(pb_df.to_numpy()))


def test_create_pseudobulk_min_cells_and_missing_columns(pbmc_like):
    pb_df, info = create_pseudobulk(
        pbmc_like, celltype_col="true_type", min_cells=50, meta_cols=[]
    )
    assert pb_df.shape[1] == 0
    assert info.empty

    with pytest.raises(KeyError):
        create_pseudobulk(pbmc_like, celltype_col="celltype")


def test_filter_genes_for_de():
    pb_df = pd.DataFrame(
        {"s1": [10, 0, 6], "s2": [10, 10, 1], "s3": [10, 0, 6]}, index=["a", "b", "c"]
    )
    kept = filter_genes_for_de(pb_df, min_count=5, min_samples=2)
    assert list(kept.index) == ["a", "c"]


def test_flag_significant():
    results = pd.DataFrame(
        {"logFC": [2.0, -2.0, 0.1, 3.0], "adj.P.Val": [0.01, 0.01, 0.01, np.nan]}
    )
    flag_significant(results, fdr_threshold=0.05, fc_threshold=0.5)

    assert list(results["significant"]) == [True, True, False, False]
    assert list(results["upregulated"]) == [True, False, False, False]
    assert list(results["downregulated"]) == [False, True, False, False]


def test_ttest_finds_upregulated_genes():
    pb_df, info = _make_pseudobulk()
    result = run_de_with_ttest(pb_df, info, "STIM_vs_CTRL", "STIM", "CTRL", DE_PARAMS, "T")

    assert list(result.columns) == RESULT_COLUMNS
    up = set(result.loc[result["upregulated"], "gene"])
    assert set(UP_GENES) <= up
    assert result.set_index("gene").loc["GENE0", "logFC"] > 2


def test_ttest_needs_two_samples_per_group():
    pb_df, info = _make_pseudobulk(n_per_group=1)
    assert run_de_with_ttest(pb_df, info, "x", "STIM", "CTRL", DE_PARAMS, "T") is None


def test_deseq2_uses_second_group_as_reference():
    pb_df, info = _make_pseudobulk()
    result = run_de_with_deseq2(pb_df, info, "STIM_vs_CTRL", "STIM", "CTRL", DE_PARAMS, "T")

    assert list(result.columns) == RESULT_COLUMNS
    by_gene = result.set_index("gene")
    for gene in UP_GENES:
        assert by_gene.loc[gene, "upregulated"]
        assert by_gene.loc[gene, "logFC"] == pytest.approx(3.0, abs=1.0)
    assert (result["contrast"] == "STIM_vs_CTRL").all()


def test_deseq2_skips_underpowered_contrast():
    pb_df, info = _make_pseudobulk(n_per_group=1)
    assert run_de_with_deseq2(pb_df, info, "x", "STIM", "CTRL", DE_PARAMS, "T") is None


def test_run_de_for_celltype_and_plots(tmp_path):
    pb_df, info = _make_pseudobulk()
    contrasts = [("STIM_vs_CTRL", "STIM", "CTRL")]

    results = run_de_for_celltype(
        pb_df, info, "T", contrasts, de_params=DE_PARAMS, use_deseq2=False
    )
    assert set(UP_GENES) <= set(results.loc[results["significant"], "gene"])

    counts = plot_de_summary(results, save_path=tmp_path / "summary.png")
    assert counts.loc[0, "n_genes"] >= 3

    plot_volcano(results, "T - STIM_vs_CTRL", save_path=tmp_path / "volcano.png")
    plot_ma(results, "T - STIM_vs_CTRL", save_path=tmp_path / "ma.png")
    heatmap = plot_de_heatmap(
        pb_df, info, results, "T", "STIM_vs_CTRL", top_n=10, save_path=tmp_path / "heat.png"
    )

    assert heatmap.shape == (10, 10)
    for name in ("summary.png", "volcano.png", "ma.png", "heat.png"):
        assert (tmp_path / name).exists()


def test_run_de_for_celltype_skips_small_inputs():
    pb_df, info = _make_pseudobulk()
    contrasts = [("STIM_vs_CTRL", "STIM", "CTRL")]

    assert run_de_for_celltype(pb_df, info, "B", contrasts, de_params=DE_PARAMS) is None

    strict = dict(DE_PARAMS, min_genes=10_000)
    assert run_de_for_celltype(pb_df, info, "T", contrasts, de_params=strict) is None
