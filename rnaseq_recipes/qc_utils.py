#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation, adaptive thresholds, plotting and filtering
"""

import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
import seaborn as sns
from rnaseq_recipes.params import (
    ADAPTIVE_FILTERING,
    CELL_FILTERS,
    GENE_FILTERS,
    GENE_PATTERNS,
)

QC_METRICS = [
    ("n_genes_by_counts", "Genes per cell"),
    ("total_counts", "UMIs per cell"),
    ("percent_mt", "Mitochondrial %"),
    ("percent_ribo", "Ribosomal %"),
]


def calculate_qc_metrics(adata):
    """Calculate QC metrics

    Args:
        adata: AnnData object

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    # Mitochondrial genes
    adata.var["mt"] = adata.var_names.str.startswith(GENE_PATTERNS["mt_pattern"])
    # Ribosomal genes
    adata.var["ribo"] = adata.var_names.str.match(GENE_PATTERNS["ribo_pattern"])

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt", "ribo"], percent_top=None, log1p=False, inplace=True
    )

    # Empty droplets would give NaN percentages
    adata.obs["percent_mt"] = adata.obs.pop("pct_counts_mt").fillna(0.0)
    adata.obs["percent_ribo"] = adata.obs.pop("pct_counts_ribo").fillna(0.0)

    # Novelty score: genes detected per UMI on a log scale
    with np.errstate(divide="ignore", invalid="ignore"):
        complexity = np.log10(adata.obs["n_genes_by_counts"]) / np.log10(
            adata.obs["total_counts"]
        )
    adata.obs["log10_genes_per_umi"] = (
        complexity.replace([np.inf, -np.inf], np.nan).fillna(0.0)
    )

    n_mt = int(adata.var["mt"].sum())
    print(f"  {n_mt} mitochondrial genes ({GENE_PATTERNS['mt_pattern']}*)")
    if n_mt == 0:
        print("  Warning: no mitochondrial genes matched, check the species setting")

    return adata


def summarize_qc_by_sample(adata, groupby="orig.ident"):
    """Per-sample cell counts and median QC metrics"""
    if groupby not in adata.obs:
        raise KeyError(f"'{groupby}' not found in adata.obs")

    summary = adata.obs.groupby(groupby, observed=True).agg(
        n_cells=("total_counts", "size"),
        median_genes=("n_genes_by_counts", "median"),
        median_counts=("total_counts", "median"),
        median_percent_mt=("percent_mt", "median"),
    )
    return summary.round(2)


def compute_adaptive_thresholds(
    adata,
    metrics=None,
    iqr_multiplier=None,
    groupby="orig.ident",
):
    """IQR-based outlier bounds per sample

    Args:
        adata: AnnData object with QC metrics
        metrics: obs columns to derive bounds for
        iqr_multiplier: Number of IQRs beyond Q1/Q3
        groupby: Sample column

    Returns:
        DataFrame indexed by sample with <metric>_lower / <metric>_upper columns
    """
    if metrics is None:
        metrics = ADAPTIVE_FILTERING["metrics"]
    if iqr_multiplier is None:
        iqr_multiplier = ADAPTIVE_FILTERING["iqr_multiplier"]

    missing = [m for m in metrics + [groupby] if m not in adata.obs]
    if missing:
        raise KeyError(f"Missing columns in adata.obs: {missing}")

    grouped = adata.obs.groupby(groupby, observed=True)
    bounds = {}
    for metric in metrics:
        q1 = grouped[metric].quantile(0.25)
        q3 = grouped[metric].quantile(0.75)
        iqr = q3 - q1
        bounds[f"{metric}_lower"] = q1 - iqr_multiplier * iqr
        bounds[f"{metric}_upper"] = q3 + iqr_multiplier * iqr

    return pd.DataFrame(bounds)


def flag_outlier_cells(adata, thresholds, groupby="orig.ident"):
    """Mark cells outside their sample's adaptive bounds in obs["qc_outlier"]"""
    metrics = sorted(
        {c.rsplit("_", 1)[0] for c in thresholds.columns if c.endswith("_lower")}
    )
    samples = adata.obs[groupby].astype(str)
    thresholds = thresholds.copy()
    thresholds.index = thresholds.index.astype(str)

    outlier = np.zeros(adata.n_obs, dtype=bool)
    for metric in metrics:
        lower = samples.map(thresholds[f"{metric}_lower"]).to_numpy(dtype=float)
        upper = samples.map(thresholds[f"{metric}_upper"]).to_numpy(dtype=float)
        values = adata.obs[metric].to_numpy(dtype=float)
        outlier |= (values < lower) | (values > upper)

    adata.obs["qc_outlier"] = outlier
    print(f"Flagged {outlier.sum():,} outlier cells ({outlier.mean()*100:.1f}%)")
    return adata


def plot_qc_metrics(adata, save_dir=None):
    """Plot QC metrics

    Args:
        adata: AnnData object with QC metrics
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    qc_data = adata.obs[[metric for metric, _ in QC_METRICS]]

    # First figure: violin plots with the active thresholds
    fig, axes = plt.subplots(2, 2, figsize=(12, 10))
    axes = axes.flatten()

    thresholds = {
        "n_genes_by_counts": (CELL_FILTERS["min_genes"], CELL_FILTERS["max_genes"]),
        "total_counts": (CELL_FILTERS["min_counts"], CELL_FILTERS["max_counts"]),
        "percent_mt": (None, CELL_FILTERS["max_mt_pct"]),
        "percent_ribo": (None, CELL_FILTERS["max_ribo_pct"]),
    }

    for ax, (metric, title) in zip(axes, QC_METRICS):
        sns.violinplot(data=qc_data, y=metric, ax=ax, color="skyblue", inner="box")
        for value in thresholds[metric]:
            if value is not None:
                ax.axhline(y=value, color="red", linestyle="--", alpha=0.5)
        ax.set_ylabel(title)
        ax.set_xlabel("")
        ax.set_title(title)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_violin_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_violin_plots.png")
        plt.close(fig)
    else:
        plt.show()

    # Second figure: scatter plots
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    sc.pl.scatter(adata, x="total_counts", y="percent_mt", ax=axes[0], show=False)
    sc.pl.scatter(
        adata,
        x="total_counts",
        y="n_genes_by_counts",
        color="percent_mt",
        ax=axes[1],
        show=False,
    )

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_scatter_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_scatter_plots.png")
        plt.close(fig)
    else:
        plt.show()


def plot_qc_by_group(adata, groupby="orig.ident", save_dir=None):
    """Create violin plots comparing QC distributions across groups

    Args:
        adata: AnnData object
        groupby: Column to group by (e.g., 'orig.ident', 'condition')
        save_dir: Directory to save plots
    """
    plot_data = adata.obs[[groupby] + [metric for metric, _ in QC_METRICS]].copy()

    fig, axes = plt.subplots(2, 2, figsize=(15, 10))
    axes = axes.flatten()

    for ax, (metric, title) in zip(axes, QC_METRICS):
        sns.violinplot(data=plot_data, x=groupby, y=metric, ax=ax, cut=0)
        ax.set_title(title)
        ax.set_xlabel("")
        ax.tick_params(axis="x", rotation=45)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / f"violin_by_{groupby}.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/violin_by_{groupby}.png")
        plt.close(fig)
    else:
        plt.show()

    return fig


def filter_cells_and_genes(
    adata,
    min_genes=200,
    max_genes=6000,
    max_mt_pct=10,
    min_counts=None,
    max_counts=None,
    max_ribo_pct=None,
    min_complexity=None,
    min_cells=None,
    remove_doublets=True,
):
    """Apply QC filtering

    Args:
        adata: AnnData object with QC metrics
        min_genes: Minimum genes per cell
        max_genes: Maximum genes per cell
        max_mt_pct: Maximum mitochondrial percentage
        min_counts: Minimum total counts per cell (optional)
        max_counts: Maximum total counts per cell (optional)
        max_ribo_pct: Maximum ribosomal percentage (optional)
        min_complexity: Minimum log10 genes per UMI (optional)
        min_cells: Minimum cells expressing a gene (default GENE_FILTERS)
        remove_doublets: Drop cells flagged in obs["predicted_doublet"]

    Returns:
        Filtered AnnData object
    """
    print("Applying QC filters...")

    if "n_genes_by_counts" not in adata.obs:
        raise KeyError("QC metrics missing, run calculate_qc_metrics first")

    if min_cells is None:
        min_cells = GENE_FILTERS["min_cells"]

    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    obs = adata.obs
    keep = (obs.n_genes_by_counts >= min_genes) & (obs.n_genes_by_counts < max_genes)
    keep &= obs.percent_mt < max_mt_pct

    # Optional count filters
    if min_counts is not None:
        keep &= obs.total_counts >= min_counts
    if max_counts is not None:
        keep &= obs.total_counts <= max_counts

    if max_ribo_pct is not None:
        keep &= obs.percent_ribo < max_ribo_pct
    if min_complexity is not None:
        keep &= obs.log10_genes_per_umi >= min_complexity

    if "qc_outlier" in obs:
        keep &= ~obs.qc_outlier.astype(bool)

    # Remove predicted doublets
    if remove_doublets and "predicted_doublet" in obs:
        keep &= ~obs.predicted_doublet.astype(bool)

    adata = adata[keep.to_numpy()].copy()

    # Filter genes expressed in at least min_cells of the retained cells
    sc.pp.filter_genes(adata, min_cells=min_cells)

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata
