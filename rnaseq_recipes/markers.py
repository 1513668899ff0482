#!/usr/bin/env python3
"""
Marker gene utilities for single-cell RNA-seq analysis
Handles cluster markers, markers conserved across conditions, within
cell type condition comparisons and marker panel visualization
"""

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy.stats import combine_pvalues

from rnaseq_recipes.params import MARKER_PARAMS


def _ranked_genes(adata, groupby, group, reference="rest", method="wilcoxon"):
    """Run rank_genes_groups for one group and return its full table"""
    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        groups=[group],
        reference=reference,
        method=method,
        use_raw=adata.raw is not None,
        pts=True,
        key_added="rank_genes_tmp",
    )
    result = sc.get.rank_genes_groups_df(adata, group=group, key="rank_genes_tmp")
    del adata.uns["rank_genes_tmp"]
    return result.set_index("names")


def compute_top_markers_per_cluster(
    adata,
    groupby="leiden",
    method="wilcoxon",
    n_top=30,
    pval_adj_cutoff=None,
    min_logfc=None,
    min_pct=None,
    save_dir=None,
    plot=False,
):
    """Compute top marker genes per cluster using differential expression.

    Args:
        adata: AnnData object with clustering results.
        groupby: Column in adata.obs to group by (default: "leiden").
        method: DE method passed to scanpy (e.g., "wilcoxon", "t-test").
        n_top: Number of top genes to rank per group.
        pval_adj_cutoff: Optional adjusted p-value cutoff to filter results.
        min_logfc: Optional minimum log fold change (positive markers only).
        min_pct: Optional minimum fraction of cluster cells expressing the gene
            (Seurat min.pct).
        save_dir: Optional Path to save a CSV summary and optional plots.
        plot: If True, create a rank_genes_groups plot (saved if save_dir provided).

    Returns:
        Pandas DataFrame with ranked markers across all groups.
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    print(f"Ranking marker genes per '{groupby}' ({method})...")
    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        n_genes=int(n_top),
        use_raw=adata.raw is not None,
        pts=True,
    )

    markers_df = sc.get.rank_genes_groups_df(adata, None)
    if pval_adj_cutoff is not None:
        markers_df = markers_df[markers_df["pvals_adj"] <= float(pval_adj_cutoff)]
    if min_logfc is not None:
        markers_df = markers_df[markers_df["logfoldchanges"] >= float(min_logfc)]
    if min_pct is not None:
        markers_df = markers_df[markers_df["pct_nz_group"] >= float(min_pct)]
    print(f"  {len(markers_df):,} markers across {markers_df['group'].nunique()} groups")

    if save_dir is not None:
        out_csv = save_dir / "top_markers_by_cluster.csv"
        markers_df.to_csv(out_csv, index=False)
        print(f"  Saved: {out_csv}")

    if plot:
        sc.pl.rank_genes_groups(adata, n_genes=min(n_top, 20), sharey=False, show=False)
        if save_dir is not None:
            out_png = save_dir / "top_markers_ranked.png"
            plt.savefig(out_png, dpi=300, bbox_inches="tight")
            print(f"  Saved: {out_png}")
            plt.close()
        else:
            plt.show()

    return markers_df


def find_conserved_markers(
    adata,
    cluster,
    groupby="leiden",
    condition_key="condition",
    min_cells_per_condition=None,
    method="wilcoxon",
):
    """Markers of one cluster that hold up in every condition.

    The cluster is compared against all other cells separately within each
    condition. Genes tested in every condition are kept, with per-condition
    statistics, the largest p-value and a minimum-p (Tippett) combined
    p-value.

    When the cluster, or the rest of the cells, has fewer than
    min_cells_per_condition cells in any condition the per-condition test is
    not possible; a warning is printed and the markers are computed on all
    cells instead (rows marked fallback=True).

    Returns:
        DataFrame indexed by gene, sorted by combined p-value
    """
    if min_cells_per_condition is None:
        min_cells_per_condition = MARKER_PARAMS["min_cells_per_condition"]

    for key in (groupby, condition_key):
        if key not in adata.obs:
            raise KeyError(f"'{key}' not found in adata.obs")

    cluster = str(cluster)
    labels = adata.obs[groupby].astype(str)
    conditions = list(pd.Categorical(adata.obs[condition_key]).categories)

    in_cluster = pd.crosstab(labels == cluster, adata.obs[condition_key])
    n_in = in_cluster.loc[True] if True in in_cluster.index else pd.Series(0, index=conditions)
    n_out = in_cluster.loc[False] if False in in_cluster.index else pd.Series(0, index=conditions)
    too_small = [
        c
        for c in conditions
        if n_in.get(c, 0) < min_cells_per_condition
        or n_out.get(c, 0) < min_cells_per_condition
    ]

    work = adata.copy()
    work.obs["_marker_group"] = pd.Categorical(
        np.where(labels == cluster, cluster, "rest")
    )

    if too_small:
        print(
            f"  Warning: cluster {cluster} has < {min_cells_per_condition} cells in "
            f"{too_small}; conserved test not possible, using all cells instead"
        )
        result = _ranked_genes(work, "_marker_group", cluster, method=method)
        result = result.rename(
            columns={"logfoldchanges": "avg_logfoldchange", "pvals": "max_pval"}
        )
        result["minimump_p_val"] = result["max_pval"]
        result["cluster"] = cluster
        result["fallback"] = True
        return result.sort_values("minimump_p_val")

    per_condition = []
    for condition in conditions:
        subset = work[(work.obs[condition_key] == condition).to_numpy()].copy()
        ranked = _ranked_genes(subset, "_marker_group", cluster, method=method)
        ranked = ranked[["scores", "logfoldchanges", "pvals", "pvals_adj", "pct_nz_group"]]
        ranked.columns = [f"{condition}_{col}" for col in ranked.columns]
        per_condition.append(ranked)

    combined = pd.concat(per_condition, axis=1, join="inner")
    pval_cols = [f"{c}_pvals" for c in conditions]
    lfc_cols = [f"{c}_logfoldchanges" for c in conditions]

    combined["max_pval"] = combined[pval_cols].max(axis=1)
    combined["minimump_p_val"] = [
        combine_pvalues(np.clip(row, 1e-300, 1.0), method="tippett")[1]
        for row in combined[pval_cols].to_numpy()
    ]
    combined["avg_logfoldchange"] = combined[lfc_cols].mean(axis=1)
    # Conserved direction: same sign of change in every condition
    signs = np.sign(combined[lfc_cols].to_numpy())
    combined["same_direction"] = (signs == signs[:, [0]]).all(axis=1)
    combined["cluster"] = cluster
    combined["fallback"] = False

    return combined.sort_values("minimump_p_val")


def find_all_conserved_markers(
    adata,
    groupby="leiden",
    condition_key="condition",
    n_top=None,
    min_cells_per_condition=None,
    method="wilcoxon",
    save_dir=None,
):
    """Run find_conserved_markers for every cluster and stack the results"""
    if n_top is None:
        n_top = MARKER_PARAMS["n_top"]

    print(f"Finding conserved markers across '{condition_key}'...")
    results = []
    for cluster in sorted(adata.obs[groupby].astype(str).unique(), key=_natural_key):
        print(f"  Cluster {cluster}")
        res = find_conserved_markers(
            adata,
            cluster,
            groupby=groupby,
            condition_key=condition_key,
            min_cells_per_condition=min_cells_per_condition,
            method=method,
        )
        res = res[res["avg_logfoldchange"] > 0].head(n_top)
        results.append(res.rename_axis("gene").reset_index())

    all_markers = pd.concat(results, ignore_index=True)

    if save_dir is not None:
        out_csv = save_dir / "conserved_markers_by_cluster.csv"
        all_markers.to_csv(out_csv, index=False)
        print(f"  Saved: {out_csv}")

    return all_markers


def _natural_key(label):
    return (0, int(label), "") if label.isdigit() else (1, 0, label)


def find_condition_de(
    adata,
    celltype,
    condition_key,
    group1,
    group2,
    celltype_key="celltype",
    method="wilcoxon",
    min_cells=3,
):
    """Compare two conditions within one cell type at the single-cell level

    Cells are labelled "<celltype>_<condition>" and group1 is tested against
    group2 as reference.

    Returns:
        DataFrame indexed by gene with logfoldchanges / pvals / pvals_adj
    """
    for key in (celltype_key, condition_key):
        if key not in adata.obs:
            raise KeyError(f"'{key}' not found in adata.obs")

    ident = adata.obs[celltype_key].astype(str) + "_" + adata.obs[condition_key].astype(str)
    ident1 = f"{celltype}_{group1}"
    ident2 = f"{celltype}_{group2}"

    n1 = int((ident == ident1).sum())
    n2 = int((ident == ident2).sum())
    if n1 < min_cells or n2 < min_cells:
        raise ValueError(
            f"Not enough cells to compare {ident1} ({n1}) vs {ident2} ({n2}), "
            f"need at least {min_cells} each"
        )

    print(f"Testing {ident1} ({n1} cells) vs {ident2} ({n2} cells)...")
    subset = adata[ident.isin([ident1, ident2]).to_numpy()].copy()
    subset.obs["celltype_condition"] = pd.Categorical(ident[ident.isin([ident1, ident2])])

    result = _ranked_genes(
        subset, "celltype_condition", ident1, reference=ident2, method=method
    )
    result["celltype"] = celltype
    result["contrast"] = f"{group1}_vs_{group2}"
    return result


def compare_top_markers_to_expected(
    adata,
    panels,
    markers_df=None,
    top_n=10,
    save_dir=None,
    plot=True,
):
    """Overlap of each cluster's top-N markers with known marker panels

    Args:
        adata: AnnData holding rank_genes_groups results (used when
            markers_df is not given)
        panels: Dict of panel name -> genes
        markers_df: Long marker table as returned by compute_top_markers_per_cluster
        top_n: Top genes per cluster, ranked by score
        save_dir: Directory for the overlap table and precision heatmap

    Returns:
        One row per (group, panel) with overlap, precision, recall and jaccard
    """
    if markers_df is None:
        markers_df = sc.get.rank_genes_groups_df(adata, None)
    rank_col = next(
        (c for c in ("scores", "logfoldchanges") if c in markers_df.columns), None
    )
    if rank_col is None:
        raise KeyError("markers_df needs a 'scores' or 'logfoldchanges' column")

    ranked = markers_df.assign(group=markers_df["group"].astype(str)).sort_values(
        rank_col, ascending=False
    )
    top_genes = ranked.groupby("group")["names"].apply(lambda s: set(s.head(int(top_n))))

    rows = []
    for group in sorted(top_genes.index, key=_natural_key):
        top = top_genes[group]
        for panel, genes in panels.items():
            genes = set(genes)
            shared = len(top & genes)
            rows.append(
                {
                    "group": group,
                    "panel": panel,
                    "overlap": shared,
                    "top_n": len(top),
                    "panel_size": len(genes),
                    "precision": shared / max(1, len(top)),
                    "recall": shared / max(1, len(genes)),
                    "jaccard": shared / max(1, len(top | genes)),
                }
            )
    overlap = pd.DataFrame(rows)

    if save_dir is not None:
        out_csv = save_dir / "expected_marker_overlap_long.csv"
        overlap.to_csv(out_csv, index=False)
        print(f"  Saved: {out_csv}")

    if plot and save_dir is not None:
        precision = overlap.pivot(index="group", columns="panel", values="precision")
        precision = precision.loc[sorted(precision.index, key=_natural_key), list(panels)]
        fig, ax = plt.subplots(
            figsize=(max(6, 0.6 * precision.shape[1]), max(4, 0.4 * precision.shape[0]))
        )
        sns.heatmap(
            precision,
            cmap="viridis",
            vmin=0,
            vmax=1,
            annot=precision.shape[1] <= 15,
            fmt=".2f",
            cbar_kws={"label": f"Fraction of top {top_n} markers in panel"},
            ax=ax,
        )
        ax.set_xlabel("Marker panel")
        ax.set_ylabel("Cluster")
        ax.set_title("Cluster markers vs expected panels")
        plt.tight_layout()
        out_png = save_dir / "expected_marker_overlap_heatmap.png"
        fig.savefig(out_png, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out_png}")
        plt.close(fig)

    return overlap


def plot_marker_genes(
    adata, marker_genes, groupby="leiden", kind="dotplot", save_dir=None
):
    """Plot marker gene panels across groups

    Args:
        adata: AnnData object with clustering results
        marker_genes: Dict mapping panel name -> list of genes
        groupby: obs column to group cells by
        kind: "dotplot", "matrixplot" or "stacked_violin"
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    plotters = {
        "dotplot": sc.pl.dotplot,
        "matrixplot": sc.pl.matrixplot,
        "stacked_violin": sc.pl.stacked_violin,
    }
    if kind not in plotters:
        raise ValueError(f"Unknown plot kind '{kind}'. Options: {list(plotters)}")

    var_names = set(adata.raw.var_names if adata.raw is not None else adata.var_names)
    available = {}
    for panel, genes in marker_genes.items():
        present = [g for g in genes if g in var_names]
        if present:
            available[panel] = present

    if not available:
        print("No marker genes found in the data, skipping plot")
        return

    plotters[kind](
        adata,
        available,
        groupby=groupby,
        standard_scale="var",
        use_raw=adata.raw is not None,
        show=False,
    )

    if save_dir:
        out = save_dir / f"marker_genes_{kind}_by_{groupby}.png"
        plt.savefig(out, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out}")
        plt.close("all")
    else:
        plt.show()
