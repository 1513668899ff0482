import pandas as pd
import pytest

from rnaseq_recipes.markers import (
    compare_top_markers_to_expected,
    compute_top_markers_per_cluster,
    find_all_conserved_markers,
    find_condition_de,
    find_conserved_markers,
    plot_marker_genes,
)
from tests.conftest import CELLTYPE_MARKERS


def _label_by_true_type(adata):
    # Clusters named after the simulated cell types keep assertions stable
    adata.obs["leiden"] = pd.Categorical(
        adata.obs["true_type"].map({"Mono": "0", "B": "1", "NK": "2"}).astype(str)
    )
    return adata


def test_top_markers_recover_simulated_markers(clustered, tmp_path):
    adata = _label_by_true_type(clustered)
    markers_df = compute_top_markers_per_cluster(adata, n_top=5, save_dir=tmp_path)

    assert (tmp_path / "top_markers_by_cluster.csv").exists()
    top_b = set(markers_df[markers_df["group"] == "1"]["names"].head(3))
    assert top_b <= set(CELLTYPE_MARKERS["B"])

    with pytest.raises(KeyError):
        compute_top_markers_per_cluster(adata, groupby="clusters")


def test_conserved_markers_across_conditions(clustered):
    adata = _label_by_true_type(clustered)
    result = find_conserved_markers(adata, "2", condition_key="condition")

    assert not result["fallback"].any()
    for col in ("CTRL_pvals", "STIM_pvals", "CTRL_logfoldchanges", "STIM_logfoldchanges",
                "max_pval", "minimump_p_val", "avg_logfoldchange", "same_direction"):
        assert col in result.columns

    top = result.head(4)
    assert set(top.index) <= set(CELLTYPE_MARKERS["NK"])
    assert top["same_direction"].all()
    assert (top["avg_logfoldchange"] > 0).all()
    # Minimum-p combination is never above the largest per-condition p-value
    assert (result["minimump_p_val"] <= result["max_pval"] + 1e-12).all()


def test_conserved_markers_fall_back_for_condition_specific_cluster(clustered):
    adata = _label_by_true_type(clustered)
    # Restrict cluster "1" to a single condition
    adata = adata[~((adata.obs["leiden"] == "1") & (adata.obs["condition"] == "STIM"))].copy()

    result = find_conserved_markers(adata, "1", condition_key="condition")

    assert result["fallback"].all()
    assert (result["minimump_p_val"] == result["max_pval"]).all()
    assert set(result.head(3).index) <= set(CELLTYPE_MARKERS["B"])


def test_find_all_conserved_markers_writes_table(clustered, tmp_path):
    adata = _label_by_true_type(clustered)
    table = find_all_conserved_markers(adata, n_top=5, save_dir=tmp_path)

    assert list(table["cluster"].unique()) == ["0", "1", "2"]
    assert (table["avg_logfoldchange"] > 0).all()
    assert (tmp_path / "conserved_markers_by_cluster.csv").exists()


def test_find_condition_de(clustered):
    adata = _label_by_true_type(clustered)
    adata.obs["celltype"] = adata.obs["true_type"].astype(str)

    result = find_condition_de(adata, "NK", "condition", "STIM", "CTRL")
    assert set(result["contrast"]) == {"STIM_vs_CTRL"}
    assert "pvals_adj" in result.columns

    with pytest.raises(ValueError):
        find_condition_de(adata, "NK", "condition", "STIM", "CTRL", min_cells=1000)
    with pytest.raises(KeyError):
        find_condition_de(adata, "NK", "treatment", "STIM", "CTRL")


def test_compare_top_markers_to_expected(clustered, tmp_path):
    adata = _label_by_true_type(clustered)
    markers_df = compute_top_markers_per_cluster(adata, n_top=5)

    overlap = compare_top_markers_to_expected(
        adata, CELLTYPE_MARKERS, markers_df=markers_df, top_n=3, save_dir=tmp_path
    )

    best = overlap.loc[overlap.groupby("group")["precision"].idxmax()]
    assert dict(zip(best["group"], best["panel"])) == {"0": "Mono", "1": "B", "2": "NK"}
    assert (tmp_path / "expected_marker_overlap_heatmap.png").exists()


def test_plot_marker_genes(clustered, tmp_path):
    adata = _label_by_true_type(clustered)
    plot_marker_genes(adata, CELLTYPE_MARKERS, save_dir=tmp_path)
    assert any(tmp_path.glob("*.png"))

    with pytest.raises(ValueError):
        plot_marker_genes(adata, CELLTYPE_MARKERS, kind="heatmap")


def test_top_marker_filters(clustered):
    adata = _label_by_true_type(clustered)

    unfiltered = compute_top_markers_per_cluster(adata, n_top=20)
    filtered = compute_top_markers_per_cluster(
        adata, n_top=20, pval_adj_cutoff=0.05, min_logfc=1.0, min_pct=0.9
    )

    assert 0 < len(filtered) < len(unfiltered)
    assert (filtered["pvals_adj"] <= 0.05).all()
    assert (filtered["logfoldchanges"] >= 1.0).all()
    assert (filtered["pct_nz_group"] >= 0.9).all()
    # Strongly expressed simulated markers survive every filter
    nk = set(filtered.loc[filtered["group"] == "2", "names"])
    assert set(CELLTYPE_MARKERS["NK"]) <= nk


def test_conserved_markers_ranked_by_combined_pvalue(clustered):
    adata = _label_by_true_type(clustered)
    result = find_conserved_markers(adata, "0", condition_key="condition")

    assert result["minimump_p_val"].is_monotonic_increasing
    assert result.loc[result.index[:4], "avg_logfoldchange"].gt(0).all()
