#!/usr/bin/env python3
"""
Differential expression analysis utilities for single-cell RNA-seq analysis
Handles pseudobulk creation, statistical testing between conditions and
the result plots shared with the bulk RNA-seq workflow
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats
from statsmodels.stats.multitest import multipletests

from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from rnaseq_recipes.params import DE_PARAMS

RESULT_COLUMNS = [
    "gene",
    "logFC",
    "P.Value",
    "adj.P.Val",
    "AveExpr",
    "cell_type",
    "contrast",
    "significant",
    "upregulated",
    "downregulated",
]

# pydeseq2 result columns -> standard result columns
DESEQ2_RENAME = {
    "log2FoldChange": "logFC",
    "lfcSE": "lfcSE",
    "pvalue": "P.Value",
    "padj": "adj.P.Val",
    "baseMean": "AveExpr",
}


def create_condition_column(adata, factors, key_added="condition", order=None):
    """Create a condition column combining experimental factors

    Args:
        adata: AnnData object
        factors: obs columns to join with "_" (e.g. ["Genotype", "Stimulation"])
        key_added: Name of the new column
        order: Optional category order; defaults to sorted levels

    Returns:
        AnnData object with condition column added
    """
    missing = [f for f in factors if f not in adata.obs]
    if missing:
        raise KeyError(f"Missing factor columns in adata.obs: {missing}")

    condition = adata.obs[factors[0]].astype(str)
    for factor in factors[1:]:
        condition = condition + "_" + adata.obs[factor].astype(str)

    categories = order if order is not None else sorted(condition.unique())
    adata.obs[key_added] = pd.Categorical(condition, categories=categories, ordered=True)

    return adata


def flag_significant(results, fdr_threshold, fc_threshold):
    """Add significant / upregulated / downregulated flags to a results table"""
    results["significant"] = (
        results["adj.P.Val"].notna()
        & (results["adj.P.Val"] < fdr_threshold)
        & (results["logFC"].abs() > fc_threshold)
    )
    results["upregulated"] = results["significant"] & (results["logFC"] > 0)
    results["downregulated"] = results["significant"] & (results["logFC"] < 0)
    return results


def _raw_counts(adata):
    """Raw count matrix and gene names, preferring layers["counts"]"""
    if "counts" in adata.layers:
        return adata.layers["counts"], adata.var_names
    if adata.raw is not None:
        return adata.raw.X, adata.raw.var_names
    return adata.X, adata.var_names


def create_pseudobulk(
    adata,
    sample_col="orig.ident",
    celltype_col="celltype",
    min_cells=None,
    meta_cols=None,
    counts_adata=None,
):
    """Create pseudobulk samples by summing counts per sample and cell type

    Args:
        adata: AnnData object
        sample_col: Sample column
        celltype_col: Cell type column
        min_cells: Minimum cells required per pseudobulk sample
        meta_cols: Sample-level obs columns to carry into the sample table
            (defaults to "condition" when present)
        counts_adata: AnnData holding raw counts for the same cells, when
            adata itself only has processed values

    Returns:
        Tuple of (pseudobulk_df genes x groups, sample_info_df)
    """
    print("Creating pseudobulk samples...")

    if min_cells is None:
        min_cells = DE_PARAMS["min_cells"]
    if meta_cols is None:
        meta_cols = [c for c in ("condition",) if c in adata.obs]

    for key in [sample_col, celltype_col] + list(meta_cols):
        if key not in adata.obs:
            raise KeyError(f"'{key}' not found in adata.obs")

    source = counts_adata if counts_adata is not None else adata
    X, var_names = _raw_counts(source)
    if counts_adata is not None:
        X = X[source.obs_names.get_indexer(adata.obs_names)]

    group_ids = (
        adata.obs[sample_col].astype(str) + "--" + adata.obs[celltype_col].astype(str)
    )

    pseudobulk_data = []
    sample_info = []

    for group_id in group_ids.unique():
        mask = (group_ids == group_id).to_numpy()
        n_cells = int(mask.sum())
        if n_cells < min_cells:
            continue

        group_counts = X[mask].sum(axis=0)
        group_counts = np.asarray(group_counts).ravel()
        pseudobulk_data.append(group_counts)

        sample_meta = adata.obs.loc[mask].iloc[0]
        info = {
            "group_id": group_id,
            "sample_id": str(sample_meta[sample_col]),
            "celltype": str(sample_meta[celltype_col]),
            "n_cells": n_cells,
        }
        for col in meta_cols:
            info[col] = sample_meta[col]
        sample_info.append(info)

    sample_info_df = pd.DataFrame(sample_info)
    if not pseudobulk_data:
        print("No sample x cell type group reached the minimum cell count")
        return pd.DataFrame(index=var_names), sample_info_df

    pb_df = pd.DataFrame(
        np.vstack(pseudobulk_data).T,
        index=var_names,
        columns=sample_info_df["group_id"],
    )
    pb_df.columns.name = None

    print(f"Created {pb_df.shape[1]} pseudobulk samples from {pb_df.shape[0]} genes")

    return pb_df, sample_info_df


def filter_genes_for_de(pb_df, min_count=5, min_samples=2):
    """Keep genes with at least min_count counts in at least min_samples samples"""
    print("Filtering genes for DE analysis...")

    expressed_mask = (pb_df >= min_count).sum(axis=1) >= min_samples
    pb_filtered = pb_df.loc[expressed_mask]

    print(f"Kept {pb_filtered.shape[0]} genes after filtering")

    return pb_filtered


def run_de_with_deseq2(
    counts_df,
    sample_info_df,
    contrast_name,
    group1,
    group2,
    de_params,
    cell_type,
    condition_col="condition",
):
    """Run DESeq2 differential expression for a single contrast

    Args:
        counts_df: Count matrix (genes x samples)
        sample_info_df: Sample metadata DataFrame with a group_id column
        contrast_name: Name of the contrast
        group1: Test condition
        group2: Reference condition
        de_params: DE parameters dictionary
        cell_type: Cell type being analyzed

    Returns:
        DataFrame with DE results or None
    """
    mask = sample_info_df[condition_col].astype(str).isin([group1, group2])
    contrast_samples = sample_info_df[mask].copy()
    n1 = int((contrast_samples[condition_col].astype(str) == group1).sum())
    n2 = int((contrast_samples[condition_col].astype(str) == group2).sum())

    min_per_group = de_params.get("min_samples_per_group", 2)
    if n1 < min_per_group or n2 < min_per_group:
        print(f"  Skipping {contrast_name}: {n1} vs {n2} samples (need {min_per_group} per group)")
        return None

    print(f"  Testing {contrast_name} ({n1} vs {n2} samples)")

    # Reference level first
    contrast_samples[condition_col] = pd.Categorical(
        contrast_samples[condition_col].astype(str), categories=[group2, group1]
    )
    metadata = contrast_samples.set_index("group_id")[[condition_col]]

    # PyDESeq2 expects integer counts as samples x genes
    counts = counts_df[metadata.index].T.round().astype(int)
    counts = counts.loc[:, counts.sum(axis=0) > 0]

    try:
        dds = DeseqDataSet(
            counts=counts,
            metadata=metadata,
            design=f"~{condition_col}",
            refit_cooks=True,
            quiet=True,
        )
        dds.deseq2()

        stat_res = DeseqStats(
            dds, contrast=[condition_col, group1, group2], quiet=True
        )
        stat_res.summary()
    except ValueError as e:
        print(f"  Error running DESeq2 for {contrast_name}: {e}")
        return None

    results_df = stat_res.results_df.rename(columns=DESEQ2_RENAME)
    results_df["gene"] = results_df.index
    results_df["cell_type"] = cell_type
    results_df["contrast"] = contrast_name
    results_df = flag_significant(
        results_df, de_params["fdr_threshold"], de_params["fc_threshold"]
    )

    print(
        f"    {results_df['significant'].sum()} significant genes "
        f"({results_df['upregulated'].sum()} up, {results_df['downregulated'].sum()} down)"
    )

    return results_df[RESULT_COLUMNS].reset_index(drop=True)


def log_cpm(counts_df):
    """log2(CPM + 1) of a genes x samples count table"""
    lib_sizes = counts_df.sum(axis=0).replace(0, np.nan)
    return np.log2(counts_df.div(lib_sizes, axis=1).fillna(0) * 1e6 + 1)


def run_de_with_ttest(
    counts_df,
    sample_info_df,
    contrast_name,
    group1,
    group2,
    de_params,
    cell_type,
    condition_col="condition",
):
    """Fallback Welch t-test on log-CPM with Benjamini-Hochberg FDR

    Args: see run_de_with_deseq2

    Returns:
        DataFrame with DE results or None
    """
    conditions = sample_info_df[condition_col].astype(str)
    samples1 = sample_info_df.loc[conditions == group1, "group_id"]
    samples2 = sample_info_df.loc[conditions == group2, "group_id"]

    if len(samples1) < 2 or len(samples2) < 2:
        print(f"  Skipping {contrast_name}: {len(samples1)} vs {len(samples2)} samples")
        return None

    print(f"  Testing {contrast_name} ({len(samples1)} vs {len(samples2)} samples) [t-test]")

    expr = log_cpm(counts_df)
    group1_data = expr[samples1].to_numpy()
    group2_data = expr[samples2].to_numpy()

    stat, pvals = stats.ttest_ind(group1_data, group2_data, axis=1, equal_var=False)
    mean1 = group1_data.mean(axis=1)
    mean2 = group2_data.mean(axis=1)

    contrast_df = pd.DataFrame(
        {
            "gene": expr.index,
            "logFC": mean1 - mean2,
            "P.Value": pvals,
            "AveExpr": (mean1 + mean2) / 2,
            "cell_type": cell_type,
            "contrast": contrast_name,
        }
    )
    # Constant genes give NaN p-values
    contrast_df = contrast_df.dropna(subset=["P.Value"]).reset_index(drop=True)
    if contrast_df.empty:
        return None

    contrast_df["adj.P.Val"] = multipletests(contrast_df["P.Value"], method="fdr_bh")[1]
    contrast_df = flag_significant(
        contrast_df, de_params["fdr_threshold"], de_params["fc_threshold"]
    )

    print(
        f"    {contrast_df['significant'].sum()} significant genes "
        f"({contrast_df['upregulated'].sum()} up, {contrast_df['downregulated'].sum()} down)"
    )

    return contrast_df[RESULT_COLUMNS]


def run_de_for_celltype(
    pb_df,
    sample_info_df,
    cell_type,
    contrasts,
    de_params=None,
    use_deseq2=True,
    condition_col="condition",
):
    """Run differential expression analysis for a specific cell type

    Args:
        pb_df: Pseudobulk expression DataFrame (genes x samples)
        sample_info_df: Sample metadata DataFrame
        cell_type: Cell type to analyze
        contrasts: List of (contrast_name, test_condition, reference_condition)
        de_params: DE parameters (default DE_PARAMS)
        use_deseq2: Whether to use DESeq2 (True) or t-test fallback (False)

    Returns:
        DataFrame with DE results or None
    """
    if de_params is None:
        de_params = DE_PARAMS

    print(f"\n{'='*60}")
    print(f"ANALYZING: {cell_type}")
    print(f"{'='*60}")

    ct_samples = sample_info_df[sample_info_df["celltype"] == cell_type].copy()

    if len(ct_samples) < de_params["min_samples_per_group"] * 2:
        print(f"Skipping {cell_type}: Only {len(ct_samples)} samples")
        return None

    ct_counts = filter_genes_for_de(
        pb_df[ct_samples["group_id"]],
        min_count=de_params["min_count"],
        min_samples=de_params["min_samples_expr"],
    )

    if ct_counts.shape[0] < de_params["min_genes"]:
        print(f"Skipping {cell_type}: Only {ct_counts.shape[0]} genes after filtering")
        return None

    print(f"  Analyzing {ct_counts.shape[0]:,} genes across {len(ct_samples)} samples")
    print(f"  Method: {'DESeq2 (negative binomial model)' if use_deseq2 else 't-test on log-CPM'}")

    run = run_de_with_deseq2 if use_deseq2 else run_de_with_ttest
    results = []
    for contrast_name, group1, group2 in contrasts:
        result = run(
            ct_counts,
            ct_samples,
            contrast_name,
            group1,
            group2,
            de_params,
            cell_type,
            condition_col=condition_col,
        )
        if result is not None:
            results.append(result)

    if results:
        return pd.concat(results, ignore_index=True)
    return None


def plot_de_summary(de_results, fdr_threshold=0.05, fc_threshold=0.5, save_path=None):
    """Heatmap of significant DE gene counts per cell type and contrast

    Returns:
        DataFrame with counts summary
    """
    print("Plotting DE summary...")

    sig_genes = de_results[
        (de_results["adj.P.Val"] < fdr_threshold)
        & (de_results["logFC"].abs() > fc_threshold)
    ]

    counts = (
        sig_genes.groupby(["cell_type", "contrast"]).size().rename("n_genes").reset_index()
    )

    heatmap_data = (
        counts.pivot(index="cell_type", columns="contrast", values="n_genes")
        .reindex(
            index=sorted(de_results["cell_type"].unique()),
            columns=sorted(de_results["contrast"].unique()),
        )
        .fillna(0)
    )

    fig, ax = plt.subplots(figsize=(12, 6))
    sns.heatmap(heatmap_data, annot=True, fmt="g", cmap="Blues", ax=ax)
    ax.set_title(
        f"Number of significant DE genes (adj.P < {fdr_threshold}, |logFC| > {fc_threshold})"
    )
    ax.set_xlabel("Contrast")
    ax.set_ylabel("Cell type")
    plt.xticks(rotation=45, ha="right")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return counts


def plot_de_heatmap(
    pb_df,
    sample_info_df,
    de_results,
    cell_type,
    contrast,
    top_n=50,
    condition_col="condition",
    save_path=None,
):
    """Plot heatmap of top DE genes (log2 CPM of pseudobulk samples)"""
    ct_results = de_results[
        (de_results["cell_type"] == cell_type) & (de_results["contrast"] == contrast)
    ]

    if len(ct_results) == 0:
        print(f"No results for {cell_type} - {contrast}")
        return None

    top_up = ct_results.nlargest(top_n // 2, "logFC")
    top_down = ct_results.nsmallest(top_n // 2, "logFC")
    top_genes = list(dict.fromkeys(pd.concat([top_up, top_down])["gene"]))

    ct_samples = sample_info_df[sample_info_df["celltype"] == cell_type]
    ct_samples = ct_samples.sort_values(condition_col)
    heatmap_data = log_cpm(pb_df[ct_samples["group_id"]]).loc[top_genes]

    fig, ax = plt.subplots(figsize=(12, max(8, len(top_genes) * 0.3)))
    sns.heatmap(
        heatmap_data,
        cmap=sns.diverging_palette(220, 20, as_cmap=True),
        center=heatmap_data.values.mean(),
        xticklabels=ct_samples[condition_col].astype(str).tolist(),
        yticklabels=True,
        cbar_kws={"label": "Log2(CPM + 1)"},
        ax=ax,
    )
    ax.set_title(
        f"{cell_type} - {contrast}\nTop {len(top_genes)} DE genes",
        fontsize=14,
        fontweight="bold",
    )
    ax.set_xlabel("Samples (grouped by condition)", fontsize=12)
    ax.set_ylabel("Genes", fontsize=12)

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return heatmap_data


def _categorize(results, fc_threshold, pval_threshold):
    category = np.full(len(results), "Not significant", dtype=object)
    sig = (results["adj.P.Val"] < pval_threshold).to_numpy()
    category[sig & (results["logFC"] > fc_threshold).to_numpy()] = "Upregulated"
    category[sig & (results["logFC"] < -fc_threshold).to_numpy()] = "Downregulated"
    return category


def plot_volcano(
    results,
    title,
    fc_threshold=0.5,
    pval_threshold=0.05,
    n_labels=10,
    save_path=None,
):
    """Volcano plot of a single contrast's results

    Args:
        results: DE results for one contrast (gene, logFC, P.Value, adj.P.Val)
        title: Plot title (e.g. "<cell type> - <contrast>")
        fc_threshold: Log2FC threshold for coloring
        pval_threshold: Adjusted p-value threshold for coloring
        n_labels: Label this many of the most significant genes
        save_path: Path to save figure
    """
    if len(results) == 0:
        print(f"No results for {title}")
        return None

    plot_df = results.dropna(subset=["P.Value", "logFC"]).copy()
    plot_df["neg_log10_pval"] = -np.log10(plot_df["P.Value"] + 1e-300)
    plot_df["category"] = _categorize(plot_df, fc_threshold, pval_threshold)

    fig, ax = plt.subplots(figsize=(10, 8))

    styles = {
        "Not significant": ("gray", 0.5, 20),
        "Upregulated": ("red", 0.7, 30),
        "Downregulated": ("blue", 0.7, 30),
    }
    for category, (color, alpha, size) in styles.items():
        data = plot_df[plot_df["category"] == category]
        if len(data) == 0:
            continue
        label = category if category == "Not significant" else f"{category} (n={len(data)})"
        ax.scatter(
            data["logFC"], data["neg_log10_pval"], c=color, alpha=alpha, s=size, label=label
        )

    for _, row in plot_df[plot_df["category"] != "Not significant"].nsmallest(
        n_labels, "P.Value"
    ).iterrows():
        ax.annotate(row["gene"], (row["logFC"], row["neg_log10_pval"]), fontsize=8)

    ax.axvline(fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axvline(-fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)

    ax.set_xlabel("Log2 Fold Change", fontsize=12)
    ax.set_ylabel("-Log10(P-value)", fontsize=12)
    ax.set_title(f"{title}\nVolcano Plot", fontsize=14, fontweight="bold")
    ax.legend(loc="best")
    ax.grid(alpha=0.3)

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return plot_df


def plot_ma(results, title, pval_threshold=0.05, save_path=None):
    """MA plot: log fold change against mean expression

    Args:
        results: DE results for one contrast (logFC, AveExpr, adj.P.Val)
        title: Plot title
        pval_threshold: Adjusted p-value threshold for coloring
        save_path: Path to save figure
    """
    plot_df = results.dropna(subset=["logFC", "AveExpr"])
    plot_df = plot_df[plot_df["AveExpr"] > 0]
    sig = (plot_df["adj.P.Val"] < pval_threshold).to_numpy()

    fig, ax = plt.subplots(figsize=(9, 6))
    ax.scatter(
        plot_df.loc[~sig, "AveExpr"], plot_df.loc[~sig, "logFC"],
        c="gray", alpha=0.4, s=10, label="Not significant",
    )
    ax.scatter(
        plot_df.loc[sig, "AveExpr"], plot_df.loc[sig, "logFC"],
        c="red", alpha=0.7, s=14, label=f"adj.P < {pval_threshold} (n={sig.sum()})",
    )
    ax.axhline(0, color="black", linewidth=1)
    ax.set_xscale("log")
    ax.set_xlabel("Mean of normalized counts", fontsize=12)
    ax.set_ylabel("Log2 Fold Change", fontsize=12)
    ax.set_title(f"{title}\nMA Plot", fontsize=14, fontweight="bold")
    ax.legend(loc="best")
    ax.grid(alpha=0.3)

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return fig
