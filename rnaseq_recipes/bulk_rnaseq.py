#!/usr/bin/env python3
"""
Bulk RNA-seq differential expression utilities
Count matrix loading, expression filtering, DESeq2 testing (pydeseq2),
variance-stabilized sample QC plots and result export
"""

from itertools import combinations
from pathlib import Path

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from rnaseq_recipes.data_loader import _read_table
from rnaseq_recipes.differential_expression import DESEQ2_RENAME, flag_significant
from rnaseq_recipes.params import BULK_DE_PARAMS

FEATURECOUNTS_ANNOTATION = ["Chr", "Start", "End", "Strand", "Length"]


def _clean_sample_name(name):
    """featureCounts column headers are BAM paths"""
    name = Path(str(name)).name
    for suffix in (".sorted.bam", ".bam"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def load_count_matrix(path):
    """Load a genes x samples raw count table

    Handles featureCounts output (leading comment line, annotation columns,
    BAM paths as sample names) and plain CSV/TSV tables with gene ids in the
    first column.

    Args:
        path: Path to the count table

    Returns:
        DataFrame of integer counts (genes x samples)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count table not found: {path}")

    counts = _read_table(path, index_col=0, comment="#")

    annotation = [c for c in FEATURECOUNTS_ANNOTATION if c in counts.columns]
    if annotation:
        print(f"Detected featureCounts output, dropping columns: {annotation}")
        counts = counts.drop(columns=annotation)
        counts.columns = [_clean_sample_name(c) for c in counts.columns]

    counts.index = counts.index.astype(str)
    counts.index.name = "gene"

    non_numeric = [c for c in counts.columns if not pd.api.types.is_numeric_dtype(counts[c])]
    if non_numeric:
        raise ValueError(f"Non-numeric count columns: {non_numeric}")
    if counts.isna().any().any():
        raise ValueError("Count table contains missing values")
    if (counts < 0).any().any():
        raise ValueError("Count table contains negative values")
    if not np.allclose(counts.to_numpy(), np.round(counts.to_numpy())):
        raise ValueError(
            "Count table contains non-integer values; DESeq2 needs raw counts"
        )

    counts = counts.round().astype(int)
    print(f"Loaded counts: {counts.shape[0]:,} genes x {counts.shape[1]} samples")

    return counts


def load_sample_table(path, sample_col="sample"):
    """Load the sample table, indexed by sample name"""
    metadata = _read_table(path)
    if sample_col not in metadata.columns:
        raise ValueError(f"Sample table has no '{sample_col}' column")
    if metadata[sample_col].duplicated().any():
        dups = metadata.loc[metadata[sample_col].duplicated(), sample_col].tolist()
        raise ValueError(f"Duplicated samples in sample table: {dups}")

    metadata[sample_col] = metadata[sample_col].astype(str)
    return metadata.set_index(sample_col)


def align_counts_and_metadata(counts, metadata):
    """Restrict both tables to their common samples, in sample-table order

    Returns:
        Tuple of (counts, metadata)
    """
    common = [s for s in metadata.index if s in set(counts.columns)]
    only_counts = sorted(set(counts.columns) - set(metadata.index))
    only_meta = sorted(set(metadata.index) - set(counts.columns))

    if only_counts:
        print(f"  Warning: samples without metadata (dropped): {only_counts}")
    if only_meta:
        print(f"  Warning: samples without counts (dropped): {only_meta}")
    if not common:
        raise ValueError("Count table and sample table share no samples")

    print(f"Using {len(common)} samples")
    return counts[common], metadata.loc[common]


def counts_per_million(counts):
    return counts.div(counts.sum(axis=0), axis=1) * 1e6


def filter_low_counts(counts, min_cpm=None, min_samples=None, group_sizes=None):
    """Keep genes above min_cpm CPM in at least min_samples samples

    min_samples defaults to the smallest experimental group, as edgeR's
    filterByExpr does.

    Args:
        counts: Raw counts (genes x samples)
        min_cpm: CPM cutoff (default BULK_DE_PARAMS["min_cpm"])
        min_samples: Number of samples that must pass the cutoff
        group_sizes: Sizes of the experimental groups

    Returns:
        Filtered counts
    """
    if min_cpm is None:
        min_cpm = BULK_DE_PARAMS["min_cpm"]
    if min_samples is None:
        min_samples = BULK_DE_PARAMS["min_samples"]
    if min_samples is None:
        min_samples = min(group_sizes) if group_sizes is not None else 2

    keep = (counts_per_million(counts) >= min_cpm).sum(axis=1) >= min_samples
    filtered = counts.loc[keep]

    print(
        f"Expression filter (CPM >= {min_cpm} in >= {min_samples} samples): "
        f"kept {filtered.shape[0]:,} / {counts.shape[0]:,} genes"
    )
    return filtered


def run_deseq2(
    counts,
    metadata,
    design_factor=None,
    reference_level=None,
    n_cpus=1,
):
    """Fit the DESeq2 model for a single-factor design

    Args:
        counts: Raw counts (genes x samples)
        metadata: Sample table indexed like the count columns
        design_factor: Metadata column to test (default BULK_DE_PARAMS)
        reference_level: Baseline level; defaults to the first sorted level
        n_cpus: Worker processes for pydeseq2

    Returns:
        Fitted DeseqDataSet
    """
    if design_factor is None:
        design_factor = BULK_DE_PARAMS["design_factor"]
    if reference_level is None:
        reference_level = BULK_DE_PARAMS["reference_level"]

    if design_factor not in metadata.columns:
        raise KeyError(f"'{design_factor}' not found in sample table")

    levels = sorted(metadata[design_factor].astype(str).unique())
    if len(levels) < 2:
        raise ValueError(f"'{design_factor}' needs at least two levels, found {levels}")
    if reference_level is None:
        reference_level = levels[0]
    if reference_level not in levels:
        raise ValueError(f"Reference level '{reference_level}' not in {levels}")

    # Reference level first
    ordered = [reference_level] + [lv for lv in levels if lv != reference_level]
    design = metadata.loc[counts.columns, [design_factor]].copy()
    design[design_factor] = pd.Categorical(
        design[design_factor].astype(str), categories=ordered
    )

    print(f"\n{'='*60}")
    print(f"DESEQ2: ~{design_factor} (reference: {reference_level})")
    print(f"{'='*60}")
    print(design[design_factor].value_counts().reindex(ordered).to_string())

    dds = DeseqDataSet(
        counts=counts.T,
        metadata=design,
        design=f"~{design_factor}",
        refit_cooks=True,
        n_cpus=n_cpus,
        quiet=True,
    )
    dds.deseq2()

    return dds


def _shrink_coeff(dds, design_factor, test_level, reference_level):
    """Name of the LFC coefficient for test vs reference, if the model has one"""
    lfc_cols = list(dds.varm["LFC"].columns)
    candidates = [
        f"{design_factor}[T.{test_level}]",
        f"{design_factor}_{test_level}_vs_{reference_level}",
    ]
    for name in candidates:
        if name in lfc_cols:
            return name
    return None


def _model_reference(dds, design_factor):
    """The factor level absorbed into the intercept of a fitted model"""
    lfc_cols = list(dds.varm["LFC"].columns)
    levels = dds.obs[design_factor].astype(str).unique()
    uncoded = [
        lv
        for lv in levels
        if f"{design_factor}[T.{lv}]" not in lfc_cols
        and not any(c.startswith(f"{design_factor}_{lv}_vs_") for c in lfc_cols)
    ]
    return uncoded[0] if len(uncoded) == 1 else None


def _relevel(dds, design_factor, reference_level):
    """Refit the model with a different reference level (DESeq2 relevel)"""
    counts = pd.DataFrame(
        np.asarray(dds.X), index=dds.obs_names, columns=dds.var_names
    ).T
    return run_deseq2(
        counts,
        dds.obs[[design_factor]],
        design_factor=design_factor,
        reference_level=reference_level,
        n_cpus=getattr(dds, "n_processes", 1),
    )


def get_contrast_results(
    dds,
    design_factor,
    test_level,
    reference_level,
    alpha=None,
    shrink_lfc=None,
    fc_threshold=None,
):
    """Wald test results for test_level vs reference_level

    Args:
        dds: Fitted DeseqDataSet
        design_factor: Tested metadata column
        test_level: Numerator level
        reference_level: Denominator level
        alpha: FDR level for independent filtering and significance
        shrink_lfc: Replace logFC with apeGLM-style shrunken estimates; the
            model is refit with reference_level as its reference when needed
        fc_threshold: |logFC| needed to flag a gene as significant

    Returns:
        DataFrame with gene, logFC, lfcSE, stat, P.Value, adj.P.Val,
        AveExpr (and logFC_mle when shrunk), sorted by adjusted p-value
    """
    if alpha is None:
        alpha = BULK_DE_PARAMS["alpha"]
    if shrink_lfc is None:
        shrink_lfc = BULK_DE_PARAMS["shrink_lfc"]
    if fc_threshold is None:
        fc_threshold = BULK_DE_PARAMS["fc_threshold"]

    contrast_name = f"{test_level}_vs_{reference_level}"
    print(f"  Contrast: {contrast_name}")

    # Shrinkage works on a model coefficient, which only exists for
    # contrasts against the model's reference level
    if shrink_lfc and _model_reference(dds, design_factor) != reference_level:
        print(f"    Refitting with reference level '{reference_level}' for LFC shrinkage")
        dds = _relevel(dds, design_factor, reference_level)

    stat_res = DeseqStats(
        dds,
        contrast=[design_factor, test_level, reference_level],
        alpha=alpha,
        quiet=True,
    )
    stat_res.summary()
    mle_lfc = stat_res.results_df["log2FoldChange"].copy()

    if shrink_lfc:
        coeff = _shrink_coeff(dds, design_factor, test_level, reference_level)
        if coeff is None:
            print(f"    No model coefficient for {contrast_name}, keeping unshrunken LFC")
            shrink_lfc = False
        else:
            stat_res.lfc_shrink(coeff=coeff)

    results = stat_res.results_df.rename(columns=DESEQ2_RENAME)
    if shrink_lfc:
        results["logFC_mle"] = mle_lfc
    results["gene"] = results.index
    results["contrast"] = contrast_name
    results = flag_significant(results, alpha, fc_threshold)

    front = ["gene", "logFC", "lfcSE", "stat", "P.Value", "adj.P.Val", "AveExpr"]
    results = results[front + [c for c in results.columns if c not in front]]
    results = results.sort_values("adj.P.Val", na_position="last").reset_index(drop=True)

    print(
        f"    {results['significant'].sum()} significant genes "
        f"({results['upregulated'].sum()} up, {results['downregulated'].sum()} down)"
    )

    return results


def all_pairwise_contrasts(levels, reference_level=None):
    """(test, reference) pairs; every level against reference_level if given"""
    levels = [str(lv) for lv in levels]
    if reference_level is not None:
        if reference_level not in levels:
            raise ValueError(f"Reference level '{reference_level}' not in {levels}")
        return [(lv, reference_level) for lv in levels if lv != reference_level]
    return [(b, a) for a, b in combinations(levels, 2)]


def normalized_counts(dds):
    """Size-factor normalized counts (genes x samples)"""
    return pd.DataFrame(
        dds.layers["normed_counts"], index=dds.obs_names, columns=dds.var_names
    ).T


def variance_stabilized_counts(dds):
    """Variance-stabilizing transform of the counts (genes x samples)"""
    if "vst_counts" not in dds.layers:
        dds.vst(use_design=False)
    return pd.DataFrame(
        dds.layers["vst_counts"], index=dds.obs_names, columns=dds.var_names
    ).T


def _top_variable(expr, n_top):
    variances = expr.var(axis=1)
    return expr.loc[variances.nlargest(min(n_top, len(variances))).index]


def _save_or_show(fig, save_path):
    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()


def plot_sample_pca(vst, metadata, color_by=None, n_top=None, save_path=None):
    """PCA of samples on the most variable transformed genes (DESeq2 plotPCA)

    Returns:
        DataFrame of PC1/PC2 coordinates joined with the sample table
    """
    if color_by is None:
        color_by = BULK_DE_PARAMS["design_factor"]
    if n_top is None:
        n_top = BULK_DE_PARAMS["n_top_variable"]

    data = _top_variable(vst, n_top).T
    n_comps = min(2, data.shape[0], data.shape[1])
    pca = PCA(n_components=n_comps)
    coords = pca.fit_transform(data - data.mean(axis=0))
    var_explained = pca.explained_variance_ratio_ * 100

    pcs = pd.DataFrame(
        coords, index=data.index, columns=[f"PC{i + 1}" for i in range(n_comps)]
    )
    if n_comps < 2:
        pcs["PC2"] = 0.0
        var_explained = np.append(var_explained, 0.0)
    pcs = pcs.join(metadata)

    fig, ax = plt.subplots(figsize=(8, 6))
    sns.scatterplot(data=pcs, x="PC1", y="PC2", hue=color_by, s=100, ax=ax)
    for sample, row in pcs.iterrows():
        ax.annotate(sample, (row["PC1"], row["PC2"]), fontsize=8,
                    xytext=(4, 4), textcoords="offset points")
    ax.set_xlabel(f"PC1 ({var_explained[0]:.1f}% variance)")
    ax.set_ylabel(f"PC2 ({var_explained[1]:.1f}% variance)")
    ax.set_title(f"Sample PCA (top {data.shape[1]} variable genes)",
                 fontsize=14, fontweight="bold")
    ax.grid(alpha=0.3)
    plt.tight_layout()

    _save_or_show(fig, save_path)
    return pcs


def plot_sample_distance_heatmap(vst, metadata, color_by=None, save_path=None):
    """Clustered heatmap of Euclidean distances between samples

    Returns:
        Square distance DataFrame
    """
    if color_by is None:
        color_by = BULK_DE_PARAMS["design_factor"]

    dist = pd.DataFrame(
        squareform(pdist(vst.T.to_numpy(), metric="euclidean")),
        index=vst.columns,
        columns=vst.columns,
    )

    groups = metadata.loc[dist.index, color_by].astype(str)
    palette = dict(zip(sorted(groups.unique()), sns.color_palette("Set2", groups.nunique())))
    row_colors = groups.map(palette)

    g = sns.clustermap(
        dist,
        cmap="Blues_r",
        row_colors=row_colors,
        col_colors=row_colors,
        xticklabels=True,
        yticklabels=True,
        figsize=(8, 8),
    )
    g.fig.suptitle("Sample-to-sample distances", y=1.02, fontsize=14, fontweight="bold")

    _save_or_show(g.fig, save_path)
    return dist


def plot_top_gene_heatmap(
    vst, metadata, results, n_top=None, color_by=None, save_path=None
):
    """Row z-scored heatmap of the top DE genes by adjusted p-value"""
    if n_top is None:
        n_top = BULK_DE_PARAMS["n_top_heatmap"]
    if color_by is None:
        color_by = BULK_DE_PARAMS["design_factor"]

    ranked = results.dropna(subset=["adj.P.Val"]).nsmallest(n_top, "adj.P.Val")
    genes = [g for g in ranked["gene"] if g in vst.index]
    if not genes:
        print("No tested genes to plot")
        return None

    samples = metadata.sort_values(color_by).index
    data = vst.loc[genes, samples]
    zscores = data.sub(data.mean(axis=1), axis=0).div(
        data.std(axis=1).replace(0, np.nan), axis=0
    ).fillna(0)

    groups = metadata.loc[samples, color_by].astype(str)
    palette = dict(zip(sorted(groups.unique()), sns.color_palette("Set2", groups.nunique())))

    g = sns.clustermap(
        zscores,
        cmap="RdBu_r",
        center=0,
        col_cluster=False,
        col_colors=groups.map(palette),
        xticklabels=True,
        yticklabels=len(genes) <= 60,
        figsize=(10, max(6, len(genes) * 0.2)),
        cbar_kws={"label": "Row z-score"},
    )
    g.fig.suptitle(f"Top {len(genes)} DE genes", y=1.02, fontsize=14, fontweight="bold")

    _save_or_show(g.fig, save_path)
    return zscores


def plot_gene_counts(norm_counts, metadata, gene, color_by=None, save_path=None):
    """Normalized counts of one gene per group (DESeq2 plotCounts)"""
    if color_by is None:
        color_by = BULK_DE_PARAMS["design_factor"]
    if gene not in norm_counts.index:
        raise KeyError(f"Gene '{gene}' not found in normalized counts")

    plot_df = pd.DataFrame(
        {
            "count": norm_counts.loc[gene] + 0.5,
            color_by: metadata.loc[norm_counts.columns, color_by].astype(str),
        }
    )

    fig, ax = plt.subplots(figsize=(6, 5))
    sns.stripplot(data=plot_df, x=color_by, y="count", hue=color_by, size=8, ax=ax,
                  legend=False)
    ax.set_yscale("log")
    ax.set_ylabel("Normalized count (+0.5)")
    ax.set_title(gene, fontsize=14, fontweight="bold")
    plt.tight_layout()

    _save_or_show(fig, save_path)
    return plot_df


def write_results(results, out_dir, name):
    """Write the full results table and its significant subset as CSV

    Returns:
        Tuple of (full_path, significant_path)
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    full_path = out_dir / f"deseq2_{name}_all.csv"
    sig_path = out_dir / f"deseq2_{name}_significant.csv"

    results.to_csv(full_path, index=False)
    results[results["significant"]].to_csv(sig_path, index=False)

    print(f"  Saved: {full_path}")
    print(f"  Saved: {sig_path} ({int(results['significant'].sum())} genes)")

    return full_path, sig_path
