#!/usr/bin/env python3
"""
Cell type annotation utilities for single-cell RNA-seq analysis
Handles manual (table driven) and marker score based cell type assignment
"""

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# Module-level constants: single sources of truth
MARKER_GENES = {  # Human PBMC panels
    "CD14 Mono": ["CD14", "LYZ", "S100A8", "S100A9", "FCN1"],
    "CD16 Mono": ["FCGR3A", "MS4A7", "VMO1"],
    "CD4 Naive T": ["CCR7", "SELL", "TCF7", "LEF1"],
    "CD4 Memory T": ["IL7R", "S100A4", "CD40LG"],
    "CD8 T": ["CD8A", "CD8B", "GZMK"],
    "T activated": ["CD69", "ICOS", "TNFRSF4"],
    "NK": ["GNLY", "NKG7", "KLRD1", "PRF1"],
    "B": ["MS4A1", "CD79A", "CD79B"],
    "B activated": ["CD83", "CD86", "EGR1"],
    "DC": ["FCER1A", "CST3", "CD1C"],
    "pDC": ["LILRA4", "IL3RA", "CLEC4C"],
    "Mk": ["PPBP", "PF4", "GNG11"],
    "Eryth": ["HBB", "HBA1", "HBA2"],
}

# Subtype -> major cell type
PARENT_LABELS = {
    "CD14 Mono": "Mono",
    "CD16 Mono": "Mono",
    "CD4 Naive T": "T",
    "CD4 Memory T": "T",
    "CD8 T": "T",
    "T activated": "T",
    "B activated": "B",
}

MAJOR_LABELS = ["Mono", "T", "NK", "B", "DC", "pDC", "Mk", "Eryth"]


def map_subtype_to_major(label, parent_labels=PARENT_LABELS):
    """Map subtype labels to their major cell type.

    Args:
        label: Cell type label (e.g., "CD14 Mono", "NK")

    Returns:
        Major cell type label (e.g., "Mono", or the original label)
    """
    return parent_labels.get(label, label)


def _major_categorical(labels, major_labels=MAJOR_LABELS):
    """Cell type labels as a categorical in MAJOR_LABELS order, others after"""
    present = set(labels)
    ordered = [lbl for lbl in major_labels if lbl in present]
    ordered += sorted(present - set(ordered), key=lambda lbl: (lbl == "Unknown", lbl))
    return pd.Categorical(labels, categories=ordered)


def annotate_clusters_from_table(
    adata,
    mapping,
    cluster_key="leiden",
    key_added="celltype",
    unknown_label="Unknown",
):
    """Label clusters from a manual cluster -> cell type mapping

    Args:
        adata: AnnData object with cluster labels
        mapping: Dict of cluster id -> cell type (see load_annotation_table)
        cluster_key: Cluster column in adata.obs
        key_added: Column to write labels to
        unknown_label: Label for clusters absent from the mapping

    Returns:
        List of clusters that had no entry in the mapping
    """
    if cluster_key not in adata.obs:
        raise KeyError(f"'{cluster_key}' not found in adata.obs")

    clusters = adata.obs[cluster_key].astype(str)
    mapping = {str(k): v for k, v in mapping.items()}

    unmapped = sorted(set(clusters) - set(mapping))
    labels = clusters.map(mapping).fillna(unknown_label)

    ordered = list(dict.fromkeys(v for v in mapping.values() if v in set(labels)))
    if unknown_label in set(labels):
        ordered.append(unknown_label)
    adata.obs[key_added] = pd.Categorical(labels, categories=ordered)

    print(f"Annotated {adata.obs[key_added].nunique()} cell types from {len(mapping)} cluster labels")
    if unmapped:
        print(f"  Warning: clusters without annotation ({unknown_label}): {unmapped}")

    return unmapped


def _score_panels(adata, marker_genes):
    """Module score for every panel with at least one gene present"""
    use_raw = adata.raw is not None
    var_names = set(adata.raw.var_names if use_raw else adata.var_names)

    score_cols = []
    for lbl, genes in marker_genes.items():
        present = [g for g in genes if g in var_names]
        if not present:
            continue
        score_name = f"score_{lbl}"
        sc.tl.score_genes(adata, gene_list=present, score_name=score_name, use_raw=use_raw)
        score_cols.append(score_name)
    return score_cols


def _best_and_margin(values):
    top_idx = np.argmax(values, axis=1)
    best = values[np.arange(values.shape[0]), top_idx]
    if values.shape[1] > 1:
        second_best = np.partition(values, -2, axis=1)[:, -2]
    else:
        second_best = np.full(values.shape[0], -np.inf)
    return top_idx, best - second_best


def assign_celltypes_by_scores(adata, marker_genes=MARKER_GENES, margin=0.05):
    """Assign a cell type to every cell from module scores

    Every cell gets its best-scoring label; cells whose best score beats the
    runner-up by at least `margin` are marked "high" confidence.

    Creates columns:
        celltype_detail: Best-scoring panel
        celltype: Major cell type (via PARENT_LABELS)
        annotation_confidence: "high" or "low"
    """
    score_cols = _score_panels(adata, marker_genes)
    if not score_cols:
        raise ValueError("None of the marker genes are present in the data")

    scores = adata.obs[score_cols].to_numpy()
    top_idx, gap = _best_and_margin(scores)
    labels = np.array([c.replace("score_", "", 1) for c in score_cols])
    winners = labels[top_idx]
    confident = gap >= margin

    adata.obs["celltype_detail"] = winners
    adata.obs["celltype"] = _major_categorical([map_subtype_to_major(w) for w in winners])
    adata.obs["annotation_confidence"] = np.where(confident, "high", "low")

    print(f"  High confidence: {confident.sum():,} cells ({confident.mean()*100:.1f}%)")
    print(f"  Low confidence: {(~confident).sum():,} cells")

    return adata


def assign_celltypes_by_cluster_scores(
    adata,
    marker_genes=MARKER_GENES,
    margin=0.05,
    agg="median",
    cluster_key="leiden",
    unknown_label="Unknown",
):
    """Assign cell types at the cluster level using module scores.

    Scores are aggregated per cluster and the best-scoring panel is assigned
    to the whole cluster when it beats the runner-up by `margin`; other
    clusters get `unknown_label`. Subtype labels are mapped back to their
    major type.

    Args:
        adata: AnnData object
        marker_genes: Dictionary of cell type markers to use for annotation.
        margin: Confidence margin between top and second-best scores
        agg: Aggregation method ('median' or 'mean')
        cluster_key: Cluster column in adata.obs

    Returns:
        DataFrame of aggregated scores per cluster with the assigned label
    """
    if cluster_key not in adata.obs:
        raise KeyError(f"'{cluster_key}' not found in adata.obs")
    if agg not in ("median", "mean"):
        raise ValueError("agg must be 'median' or 'mean'")

    score_cols = _score_panels(adata, marker_genes)
    if not score_cols:
        raise ValueError("None of the marker genes are present in the data")

    grouped = adata.obs.groupby(cluster_key, observed=True)[score_cols].agg(agg)
    top_idx, gap = _best_and_margin(grouped.to_numpy())
    labels = np.array([c.replace("score_", "", 1) for c in score_cols])

    grouped["label"] = np.where(gap >= margin, labels[top_idx], unknown_label)
    grouped["margin"] = gap
    grouped.index = grouped.index.astype(str)

    clusters = adata.obs[cluster_key].astype(str)
    detail = clusters.map(grouped["label"])
    adata.obs["celltype_detail"] = detail.values
    adata.obs["celltype"] = _major_categorical([map_subtype_to_major(lbl) for lbl in detail])
    adata.obs["annotation_confidence"] = np.where(
        detail == unknown_label, "low", "high"
    )

    n_assigned = int((grouped["label"] != unknown_label).sum())
    print(f"  Assigned {n_assigned} / {len(grouped)} clusters")
    for cluster_id, row in grouped.iterrows():
        print(f"    {cluster_id}: {row['label']} (margin {row['margin']:.3f})")

    return grouped


def create_cluster_aggregated_labels(
    adata, celltype_col="celltype", cluster_col="leiden", purity_threshold=0.60
):
    """Create cluster-level aggregated cell type labels with mixed cluster detection.

    For each cluster:
    - If dominant cell type is >purity_threshold: assigns that cell type
    - Otherwise: labels as "Mixed" and stores the top 2-3 cell types

    Side effects:
        - Adds 'celltype_cluster': cluster-level label ("celltype" or "Mixed")
        - Adds 'celltype_cluster_top_types': top cell types for each cluster
        - Adds 'cluster_purity': proportion of dominant cell type in each cluster

    Returns:
        List of mixed cluster ids
    """
    for key in (celltype_col, cluster_col):
        if key not in adata.obs:
            raise KeyError(f"'{key}' not found in adata.obs")

    composition = pd.crosstab(
        adata.obs[cluster_col].astype(str),
        adata.obs[celltype_col].astype(str),
        normalize="index",
    )
    dominant = composition.idxmax(axis=1)
    dominant_prop = composition.max(axis=1)

    top_types = {}
    for cluster_id in composition.index:
        # Top 3 types with >5% representation
        row = composition.loc[cluster_id].sort_values(ascending=False)
        row = row[row > 0.05].head(3)
        top_types[cluster_id] = ", ".join(f"{ct} ({p*100:.1f}%)" for ct, p in row.items())

    cluster_labels = dominant.where(dominant_prop > purity_threshold, "Mixed")
    mixed_clusters = list(cluster_labels[cluster_labels == "Mixed"].index)

    clusters = adata.obs[cluster_col].astype(str)
    adata.obs["celltype_cluster"] = clusters.map(cluster_labels).values
    adata.obs["celltype_cluster_top_types"] = clusters.map(top_types).values
    adata.obs["cluster_purity"] = clusters.map(dominant_prop).astype(float).values

    print(f"\n{'='*60}")
    print("CLUSTER PURITY ANALYSIS")
    print(f"{'='*60}")
    print(f"Purity threshold: {purity_threshold*100:.0f}%")
    print(f"Pure clusters: {len(cluster_labels) - len(mixed_clusters)}")
    print(f"Mixed clusters: {len(mixed_clusters)}")
    for cluster_id in mixed_clusters:
        print(f"  Cluster {cluster_id}: {top_types[cluster_id]}")

    return mixed_clusters


def celltype_proportions(adata, groupby="orig.ident", celltype_col="celltype"):
    """Fraction of each cell type within each group (rows sum to 1)"""
    for key in (groupby, celltype_col):
        if key not in adata.obs:
            raise KeyError(f"'{key}' not found in adata.obs")
    return pd.crosstab(adata.obs[groupby], adata.obs[celltype_col], normalize="index")


def plot_cell_type_summary(
    adata, groupby="orig.ident", celltype_col="celltype", normalize=True, save_dir=None
):
    """Plot summary of cell types across samples or conditions

    Args:
        adata: AnnData object with cell type annotations
        groupby: obs column for the bars
        normalize: Plot fractions instead of cell numbers
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    if normalize:
        counts = celltype_proportions(adata, groupby, celltype_col)
    else:
        counts = pd.crosstab(adata.obs[groupby], adata.obs[celltype_col])

    fig, ax = plt.subplots(figsize=(12, 6))
    counts.plot(kind="bar", stacked=True, ax=ax, width=0.8)
    ax.set_title(f"Cell type distribution across {groupby}")
    ax.set_xlabel(groupby)
    ax.set_ylabel("Fraction of cells" if normalize else "Number of cells")
    plt.xticks(rotation=45, ha="right")
    ax.legend(bbox_to_anchor=(1.05, 1), loc="upper left")
    plt.tight_layout()

    if save_dir:
        out = save_dir / f"celltype_distribution_by_{groupby}.png"
        fig.savefig(out, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out}")
        plt.close(fig)
    else:
        plt.show()

    print("\nCell type summary:")
    print(adata.obs[celltype_col].value_counts().sort_index())

    return counts
