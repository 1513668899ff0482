#!/usr/bin/env python3
"""
Doublet detection utilities for single-cell RNA-seq analysis
"""

import math

import numpy as np
import scanpy as sc
import scrublet as scr
import matplotlib.pyplot as plt

from rnaseq_recipes.params import DOUBLET_PARAMS


def detect_doublets(
    adata,
    sample_col="orig.ident",
    expected_doublet_rate=None,
    manual_threshold=None,
    max_auto_threshold=None,
    min_cells=None,
    plot_histograms=True,
    save_dir=None,
):
    """
    Doublet detection using Scrublet, run separately for each sample

    Args:
        adata: AnnData object with raw counts (should be after basic QC filtering)
        sample_col: Column name for sample identification
        expected_doublet_rate: Expected doublet rate (default from DOUBLET_PARAMS)
        manual_threshold: If set, use this threshold instead of automatic
        max_auto_threshold: Upper cap applied to automatic thresholds
        min_cells: Samples with fewer cells are not scored
        plot_histograms: Whether to plot doublet score histograms
        save_dir: Directory to save diagnostic plots

    Returns:
        AnnData object with doublet predictions and scores
    """
    print("Running doublet detection...")

    if expected_doublet_rate is None:
        expected_doublet_rate = DOUBLET_PARAMS["expected_doublet_rate"]
    if manual_threshold is None:
        manual_threshold = DOUBLET_PARAMS["manual_threshold"]
    if max_auto_threshold is None:
        max_auto_threshold = DOUBLET_PARAMS["max_auto_threshold"]
    if min_cells is None:
        min_cells = DOUBLET_PARAMS["min_cells_per_sample"]

    all_scores = np.zeros(adata.n_obs)
    all_predictions = np.zeros(adata.n_obs, dtype=bool)

    samples = list(adata.obs[sample_col].unique())

    make_plot = plot_histograms and save_dir is not None
    if make_plot:
        n_cols = min(4, len(samples))
        n_rows = math.ceil(len(samples) / n_cols)
        fig, axes = plt.subplots(
            n_rows, n_cols, figsize=(4 * n_cols, 3 * n_rows), squeeze=False
        )
        axes = axes.flatten()

    for idx, sample in enumerate(samples):
        print(f"\nProcessing sample: {sample}")

        mask = (adata.obs[sample_col] == sample).to_numpy()
        sample_indices = np.where(mask)[0]

        if len(sample_indices) < min_cells:
            print(f"  Skipping - only {len(sample_indices)} cells")
            continue

        scrub = scr.Scrublet(
            adata.X[sample_indices], expected_doublet_rate=expected_doublet_rate
        )
        doublet_scores, predicted_doublets = scrub.scrub_doublets(
            min_counts=DOUBLET_PARAMS["min_counts"],
            min_cells=DOUBLET_PARAMS["min_cells"],
            min_gene_variability_pctl=DOUBLET_PARAMS["min_gene_variability_pctl"],
            n_prin_comps=DOUBLET_PARAMS["n_prin_comps"],
            verbose=False,
        )

        if manual_threshold is not None:
            threshold = manual_threshold
        else:
            # Scrublet leaves threshold_ unset when the score histogram is unimodal
            threshold = getattr(scrub, "threshold_", None)
            if threshold is None or threshold > max_auto_threshold:
                print(
                    f"  Warning: automatic threshold unusable ({threshold}), "
                    f"using {max_auto_threshold}"
                )
                threshold = max_auto_threshold
        predicted_doublets = doublet_scores > threshold

        all_scores[sample_indices] = doublet_scores
        all_predictions[sample_indices] = predicted_doublets

        n_doublets = predicted_doublets.sum()
        pct_doublets = n_doublets / len(doublet_scores) * 100

        print(f"  Cells: {len(doublet_scores)}")
        print(f"  Threshold: {threshold:.3f}")
        print(f"  Doublets: {n_doublets} ({pct_doublets:.1f}%)")

        if make_plot:
            ax = axes[idx]
            ax.hist(doublet_scores, bins=50, alpha=0.7, edgecolor="black")
            ax.axvline(
                threshold,
                color="red",
                linestyle="--",
                label=f"Threshold: {threshold:.2f}",
            )
            ax.set_title(f"{sample}\n{n_doublets} doublets ({pct_doublets:.1f}%)")
            ax.set_xlabel("Doublet Score")
            ax.set_ylabel("Frequency")
            ax.legend()

    if make_plot:
        plt.tight_layout()
        fig.savefig(
            save_dir / "doublet_score_histograms.png", dpi=300, bbox_inches="tight"
        )
        print(f"  Saved: {save_dir}/doublet_score_histograms.png")
        plt.close(fig)

    adata.obs["doublet_score"] = all_scores
    adata.obs["predicted_doublet"] = all_predictions

    total_doublets = all_predictions.sum()
    print("\nOverall doublet detection summary:")
    print(f"  Total cells: {len(all_predictions)}")
    print(f"  Total doublets: {total_doublets}")
    print(f"  Overall rate: {total_doublets / max(1, len(all_predictions)) * 100:.1f}%")

    return adata


def transfer_doublet_calls(adata, scored):
    """Copy doublet calls from a pre-filtered subset back onto the full object

    Cells that were not scored keep a score of 0 and are not called doublets.
    """
    adata.obs["doublet_score"] = 0.0
    adata.obs["predicted_doublet"] = False
    adata.obs.loc[scored.obs_names, "doublet_score"] = scored.obs["doublet_score"]
    adata.obs.loc[scored.obs_names, "predicted_doublet"] = scored.obs[
        "predicted_doublet"
    ].astype(bool)
    adata.obs["predicted_doublet"] = adata.obs["predicted_doublet"].astype(bool)
    return adata


def plot_doublet_scores_umap(adata, save_dir=None):
    """
    Plot doublet scores on UMAP to visualize their distribution

    Args:
        adata: AnnData object with UMAP and doublet scores
        save_dir: Directory to save plot
    """
    if "X_umap" not in adata.obsm or "doublet_score" not in adata.obs:
        print("No UMAP or doublet scores found, skipping doublet score visualization")
        return

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    sc.pl.umap(
        adata,
        color="doublet_score",
        ax=ax1,
        show=False,
        title="Doublet Scores",
        cmap="Reds",
    )

    plot_df = adata.obs[["predicted_doublet"]].astype(str).astype("category")
    adata.obs["predicted_doublet_label"] = plot_df["predicted_doublet"]
    sc.pl.umap(
        adata,
        color="predicted_doublet_label",
        ax=ax2,
        show=False,
        title="Predicted Doublets",
    )
    del adata.obs["predicted_doublet_label"]

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "doublet_umap.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/doublet_umap.png")
        plt.close(fig)
    else:
        plt.show()
