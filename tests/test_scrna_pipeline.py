import pandas as pd
import pytest

from rnaseq_recipes import params
from scrna_pipeline import annotate, find_markers


def _merge_b_and_nk(adata):
    """One cluster per simulated type, except B and NK share cluster "1" """
    adata.obs["leiden"] = pd.Categorical(
        adata.obs["true_type"].map({"Mono": "0", "B": "1", "NK": "1"}).astype(str)
    )
    return adata


def test_cell_mode_annotation_detects_mixed_clusters(clustered, tmp_path):
    adata = annotate(_merge_b_and_nk(clustered), None, tmp_path, label_mode="cell")

    obs = adata.obs
    assert set(obs.loc[obs["leiden"] == "0", "celltype_cluster"]) == {"Mono"}
    assert set(obs.loc[obs["leiden"] == "1", "celltype_cluster"]) == {"Mixed"}
    # Cell level labels still separate the merged types
    merged = obs[obs["leiden"] == "1"]
    assert (merged["celltype"].astype(str) == merged["true_type"].astype(str)).mean() > 0.9
    assert merged["cluster_purity"].iloc[0] < 0.6
    assert (tmp_path / "umap_celltypes.png").exists()


def test_cluster_mode_annotation_labels_whole_clusters(clustered, tmp_path):
    adata = annotate(_merge_b_and_nk(clustered), None, tmp_path, label_mode="cluster")

    per_cluster = adata.obs.groupby("leiden", observed=True)["celltype"].nunique()
    assert (per_cluster == 1).all()
    assert (tmp_path / "cluster_annotation_scores.csv").exists()

    with pytest.raises(ValueError):
        annotate(clustered, None, tmp_path, label_mode="sample")


def test_find_markers_applies_marker_thresholds(clustered, tmp_path, monkeypatch):
    adata = clustered
    adata.obs["leiden"] = pd.Categorical(
        adata.obs["true_type"].map({"Mono": "0", "B": "1", "NK": "2"}).astype(str)
    )
    monkeypatch.setitem(params.MARKER_PARAMS, "min_pct", 0.9)
    monkeypatch.setitem(params.MARKER_PARAMS, "logfc_threshold", 1.0)

    markers_df = find_markers(adata, "condition", tmp_path, tmp_path)

    saved = pd.read_csv(tmp_path / "top_markers_by_cluster.csv")
    assert len(saved) == len(markers_df) > 0
    assert (saved["pct_nz_group"] >= 0.9).all()
    assert (saved["logfoldchanges"] >= 1.0).all()
    assert (saved["pvals_adj"] <= params.MARKER_PARAMS["pval_adj_cutoff"]).all()
    assert (tmp_path / "conserved_markers_by_cluster.csv").exists()
