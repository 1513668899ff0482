#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles normalization, cell cycle scoring, scaling, PCA, sample
integration, UMAP and clustering
"""

import math
import os

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy.stats import entropy
from sklearn.metrics import silhouette_score

from rnaseq_recipes.params import NORMALIZATION_METHODS


def normalize_and_scale(
    adata,
    method="lognorm",
    target_sum=1e4,
    n_top_genes=2000,
    batch_key=None,
    max_value=10,
):
    """Normalize counts, select variable genes and scale

    Raw counts are kept in layers["counts"] and the log-normalized full gene
    space in .raw (used for marker genes and module scores).

    Args:
        adata: AnnData object with raw counts in .X
        method: "lognorm" (library-size normalization + log1p, scaled) or
            "pearson_residuals" (analytic Pearson residuals of a negative
            binomial model, the scanpy counterpart of SCTransform)
        target_sum: Counts per cell after library-size normalization
        n_top_genes: Number of highly variable genes
        batch_key: obs column for batch-aware variable gene selection
        max_value: Clip scaled values at this magnitude

    Returns:
        Processed AnnData object restricted to variable genes
    """
    if method not in NORMALIZATION_METHODS:
        raise ValueError(
            f"Unknown normalization method '{method}'. Options: {NORMALIZATION_METHODS}"
        )

    print(f"Normalizing data ({method})...")

    # Save raw counts
    adata.layers["counts"] = adata.X.copy()
    n_top_genes = min(n_top_genes, adata.n_vars)

    if method == "lognorm":
        sc.pp.normalize_total(adata, target_sum=target_sum)
        sc.pp.log1p(adata)
        sc.pp.highly_variable_genes(
            adata, n_top_genes=n_top_genes, flavor="seurat", batch_key=batch_key
        )
        adata.raw = adata
        adata = adata[:, adata.var.highly_variable].copy()
        sc.pp.scale(adata, max_value=max_value)
    else:
        sc.experimental.pp.highly_variable_genes(
            adata,
            flavor="pearson_residuals",
            n_top_genes=n_top_genes,
            batch_key=batch_key,
        )
        lognorm = adata.copy()
        sc.pp.normalize_total(lognorm, target_sum=target_sum)
        sc.pp.log1p(lognorm)
        adata.raw = lognorm
        adata = adata[:, adata.var.highly_variable].copy()
        sc.experimental.pp.normalize_pearson_residuals(adata)

    print(f"  {adata.n_vars:,} highly variable genes retained")
    print(f"  Full gene space preserved in .raw ({adata.raw.n_vars:,} genes)")

    return adata


def score_cell_cycle(adata, s_genes, g2m_genes):
    """Score S and G2/M phase activity per cell

    Adds S_score, G2M_score and phase to adata.obs. Genes absent from the
    data are dropped before scoring.
    """
    print("Scoring cell cycle phases...")

    use_raw = adata.raw is not None
    var_names = set(adata.raw.var_names if use_raw else adata.var_names)

    s_present = [g for g in s_genes if g in var_names]
    g2m_present = [g for g in g2m_genes if g in var_names]
    print(f"  S genes found: {len(s_present)}/{len(s_genes)}")
    print(f"  G2M genes found: {len(g2m_present)}/{len(g2m_genes)}")

    if not s_present or not g2m_present:
        raise ValueError(
            "No cell cycle genes found in the data, check gene naming (species)"
        )

    sc.tl.score_genes_cell_cycle(
        adata, s_genes=s_present, g2m_genes=g2m_present, use_raw=use_raw
    )
    print(adata.obs["phase"].value_counts().to_string())

    return adata


def regress_out_cell_cycle(adata, max_value=10):
    """Regress S/G2M scores out of the scaled data"""
    missing = [c for c in ("S_score", "G2M_score") if c not in adata.obs]
    if missing:
        raise KeyError(f"{missing} not in adata.obs, run score_cell_cycle first")

    print("Regressing out cell cycle scores...")
    sc.pp.regress_out(adata, ["S_score", "G2M_score"])
    sc.pp.scale(adata, max_value=max_value)
    return adata


def run_pca(adata, n_comps=50, n_pcs_marked=None, save_dir=None):
    """Run PCA and save the elbow plot

    Args:
        adata: Scaled AnnData object
        n_comps: Components to compute (capped by data dimensions)
        n_pcs_marked: Draw a line at the number of PCs used downstream
        save_dir: Directory to save plots (optional)
    """
    n_comps = min(n_comps, min(adata.shape) - 1)
    print(f"Running PCA ({n_comps} components)...")
    sc.tl.pca(adata, svd_solver="arpack", n_comps=n_comps)

    sc.pl.pca_variance_ratio(adata, n_pcs=n_comps, log=True, show=False)
    if n_pcs_marked is not None:
        plt.axvline(n_pcs_marked, color="r", linestyle="--", label=f"Selected: {n_pcs_marked}")
        plt.legend()

    if save_dir:
        os.makedirs(save_dir, exist_ok=True)
        plt.savefig(save_dir / "pca_elbow_plot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/pca_elbow_plot.png")
        plt.close()
    else:
        plt.show()

    return adata


def integrate_samples(adata, batch_key="orig.ident", method="harmony", max_iter=10):
    """Integrate samples/conditions into a shared PCA embedding

    Harmony iteratively corrects the PCA embedding so that cells cluster by
    type rather than by batch.

    Returns:
        The obsm key downstream steps should use
    """
    if "X_pca" not in adata.obsm:
        raise KeyError("X_pca not found, run run_pca first")
    if batch_key not in adata.obs:
        raise KeyError(f"Batch key '{batch_key}' not found in adata.obs")

    n_batches = adata.obs[batch_key].nunique()
    if method == "none" or n_batches < 2:
        print(f"Skipping integration (method={method}, {n_batches} batch(es))")
        return "X_pca"
    if method != "harmony":
        raise ValueError(f"Unknown integration method '{method}'")

    print(f"Integrating {n_batches} batches of '{batch_key}' with Harmony...")
    sc.external.pp.harmony_integrate(
        adata,
        key=batch_key,
        basis="X_pca",
        adjusted_basis="X_pca_harmony",
        max_iter_harmony=max_iter,
    )
    return "X_pca_harmony"


def _leiden(adata, resolution, key_added="leiden"):
    sc.tl.leiden(
        adata,
        resolution=float(resolution),
        key_added=key_added,
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=0,
    )


def run_neighbors_umap_clustering(
    adata,
    use_rep="X_pca",
    n_pcs=30,
    n_neighbors=15,
    resolution=0.8,
    auto_resolution=False,
    resolution_grid=None,
    min_cluster_size=20,
    save_dir=None,
):
    """Build the kNN graph, run UMAP and Leiden clustering

    Args:
        adata: AnnData object with a PCA (or integrated) embedding
        use_rep: obsm key of the embedding
        n_pcs: Number of embedding dimensions used for the graph
        n_neighbors: Neighborhood size
        resolution: Leiden resolution
        auto_resolution: Choose the resolution with a silhouette sweep instead
        save_dir: Directory to save sweep outputs (optional)

    Returns:
        AnnData object with embeddings and clusters
    """
    if use_rep not in adata.obsm:
        raise KeyError(f"'{use_rep}' not found in adata.obsm")

    n_pcs = min(n_pcs, adata.obsm[use_rep].shape[1])

    print(f"Computing neighborhood graph ({use_rep}, {n_pcs} dims)...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, use_rep=use_rep)

    print("Running UMAP...")
    sc.tl.umap(adata, random_state=0)

    if auto_resolution:
        print("Performing Leiden resolution sweep...")
        resolution = choose_leiden_resolution(
            adata,
            resolution_grid=resolution_grid,
            min_cluster_size=min_cluster_size,
            use_rep=use_rep,
            save_dir=save_dir,
        )
        adata.uns["leiden_optimal_resolution"] = float(resolution)
        print(f"Chosen Leiden resolution: {resolution}")
    else:
        print(f"Clustering (Leiden, resolution {resolution})...")
        _leiden(adata, resolution)

    counts = adata.obs["leiden"].value_counts()
    print(f"  {len(counts)} clusters, sizes {counts.min()} - {counts.max()}")

    return adata


def _pick_resolution(sweep, tolerance=0.02):
    """Highest silhouette wins; near-ties go to the cleanest, coarsest partition"""
    scored = sweep.dropna(subset=["silhouette"])
    if scored.empty:
        multi = sweep[sweep["n_clusters"] > 1]
        pool = multi if not multi.empty else sweep
        return float(pool["resolution"].min())

    best = scored["silhouette"].max()
    near = scored[scored["silhouette"] >= best - tolerance]
    ranked = near.sort_values(["small_cluster_fraction", "n_clusters", "resolution"])
    return float(ranked["resolution"].iloc[0])


def _plot_resolution_sweep(sweep, chosen_res, save_path):
    fig, ax = plt.subplots(figsize=(7, 4))
    ax.plot(sweep["resolution"], sweep["silhouette"], "o-", color="tab:blue")
    ax.set_xlabel("Leiden resolution")
    ax.set_ylabel("Silhouette", color="tab:blue")

    ax_n = ax.twinx()
    ax_n.plot(sweep["resolution"], sweep["n_clusters"], "s--", color="tab:orange")
    ax_n.set_ylabel("Clusters", color="tab:orange")

    ax.axvline(chosen_res, color="gray", linestyle=":")
    ax.set_title(f"Resolution sweep (chosen {chosen_res:g})")
    fig.tight_layout()
    fig.savefig(save_path, dpi=300, bbox_inches="tight")
    plt.close(fig)
    print(f"  Saved: {save_path}")


def choose_leiden_resolution(
    adata,
    resolution_grid=None,
    min_cluster_size=20,
    use_rep="X_pca",
    save_dir=None,
):
    """Cluster at a grid of Leiden resolutions and pick one by silhouette

    Every resolution is clustered on the existing kNN graph and scored by
    silhouette width on `use_rep` and by the fraction of cells falling in
    clusters smaller than `min_cluster_size`. The chosen resolution's labels
    are copied to obs["leiden"].

    Args:
        adata: AnnData object with a neighbor graph
        resolution_grid: Resolutions to try (default 0.2 - 2.0 in steps of 0.1)
        min_cluster_size: Clusters below this size count as small
        use_rep: obsm key used for silhouette widths
        save_dir: Directory for the sweep table, clustree labels and plot

    Returns:
        Chosen resolution
    """
    if resolution_grid is None:
        resolution_grid = np.round(np.arange(0.2, 2.05, 0.1), 2)

    embedding = adata.obsm[use_rep]
    small_cutoff = max(2, int(min_cluster_size))

    rows = []
    for res in resolution_grid:
        key = f"leiden_{res:.2f}"
        _leiden(adata, res, key_added=key)
        labels = adata.obs[key].astype(str)
        sizes = labels.value_counts()

        row = {
            "resolution": float(res),
            "key": key,
            "n_clusters": len(sizes),
            "silhouette": np.nan,
            "small_cluster_fraction": 0.0,
        }
        if 1 < len(sizes) < len(labels):
            row["silhouette"] = float(silhouette_score(embedding, labels))
            row["small_cluster_fraction"] = float(
                sizes[sizes < small_cutoff].sum() / len(labels)
            )
        rows.append(row)

    sweep = pd.DataFrame(rows)
    chosen_res = _pick_resolution(sweep)
    chosen_key = sweep.loc[sweep["resolution"] == chosen_res, "key"].iloc[0]
    adata.obs["leiden"] = adata.obs[chosen_key]

    if save_dir:
        os.makedirs(save_dir, exist_ok=True)
        sweep_path = save_dir / "leiden_resolution_sweep.csv"
        sweep.drop(columns="key").to_csv(sweep_path, index=False)
        print(f"  Saved: {sweep_path}")

        # One column per resolution, readable by clustree
        clustree_path = save_dir / "clustree_leiden_labels.csv"
        adata.obs[list(sweep["key"])].rename_axis("cell").reset_index().to_csv(
            clustree_path, index=False
        )
        print(f"  Saved: {clustree_path}")

        _plot_resolution_sweep(
            sweep, chosen_res, save_dir / "leiden_sweep_diagnostics.png"
        )

    return chosen_res


def compute_batch_mixing(adata, batch_key="orig.ident", cluster_key="leiden"):
    """Batch composition of each cluster

    Returns one row per cluster with the fraction of cells from each batch,
    the cluster size and a normalized entropy (1 = batches evenly mixed,
    0 = cluster made of a single batch).
    """
    for key in (batch_key, cluster_key):
        if key not in adata.obs:
            raise KeyError(f"'{key}' not found in adata.obs")

    composition = pd.crosstab(
        adata.obs[cluster_key], adata.obs[batch_key], normalize="index"
    )
    n_batches = adata.obs[batch_key].nunique()

    mixing = composition.copy()
    mixing["n_cells"] = adata.obs[cluster_key].value_counts().reindex(composition.index)
    if n_batches > 1:
        mixing["mixing_entropy"] = [
            entropy(row) / math.log(n_batches) for row in composition.to_numpy()
        ]
    else:
        mixing["mixing_entropy"] = 0.0

    return mixing


def plot_embeddings(adata, color_keys=None, save_dir=None, filename="umap_embeddings.png"):
    """Plot UMAP embeddings colored by clusters and metadata

    Args:
        adata: AnnData object with UMAP coordinates
        color_keys: obs columns to color by (default: leiden plus sample)
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting embeddings...")

    if color_keys is None:
        color_keys = [k for k in ("leiden", "orig.ident", "condition") if k in adata.obs]

    n_cols = min(2, len(color_keys))
    n_rows = math.ceil(len(color_keys) / n_cols)
    fig, axes = plt.subplots(
        n_rows, n_cols, figsize=(6 * n_cols, 5 * n_rows), squeeze=False
    )
    axes = axes.flatten()

    for ax, key in zip(axes, color_keys):
        sc.pl.umap(
            adata,
            color=key,
            legend_loc="on data" if key == "leiden" else "right margin",
            title=key,
            ax=ax,
            show=False,
        )
    for ax in axes[len(color_keys):]:
        ax.set_visible(False)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{filename}")
        plt.close(fig)
    else:
        plt.show()


def plot_split_umap(adata, split_key="condition", color="leiden", save_dir=None):
    """One UMAP panel per level of split_key, other cells drawn in grey"""
    if split_key not in adata.obs:
        raise KeyError(f"'{split_key}' not found in adata.obs")

    levels = list(pd.Categorical(adata.obs[split_key]).categories)
    fig, axes = plt.subplots(1, len(levels), figsize=(5 * len(levels), 5), squeeze=False)

    coords = adata.obsm["X_umap"]
    for ax, level in zip(axes[0], levels):
        mask = (adata.obs[split_key] == level).to_numpy()
        ax.scatter(coords[~mask, 0], coords[~mask, 1], s=2, c="lightgrey")
        sc.pl.umap(
            adata[mask],
            color=color,
            ax=ax,
            show=False,
            title=f"{split_key} = {level}",
            legend_loc="on data" if color == "leiden" else "right margin",
        )

    plt.tight_layout()

    if save_dir:
        out = save_dir / f"umap_{color}_split_by_{split_key}.png"
        fig.savefig(out, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out}")
        plt.close(fig)
    else:
        plt.show()
