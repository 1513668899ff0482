#!/usr/bin/env python3
"""
Single-cell RNA-seq loading, QC, integration, clustering, annotation
and condition comparison

This script performs:
1. Cell Ranger / CellBender data loading and metadata
2. Quality control and doublet detection
3. Normalization, cell cycle scoring and dimensionality reduction
4. Sample integration and clustering
5. Marker genes and cell type annotation
6. Pseudobulk differential expression between conditions

python scrna_pipeline.py --data-dir data/ --samples ctrl_1 ctrl_2 stim_1 stim_2 \
    --metadata samples.csv --condition-cols stim
"""

import warnings
import argparse
import matplotlib
import pandas as pd
import scanpy as sc
from pathlib import Path

from rnaseq_recipes import params
from rnaseq_recipes.data_loader import (
    load_and_merge_samples,
    read_sample_metadata,
    add_metadata,
    load_cell_cycle_genes,
    load_annotation_table,
)
from rnaseq_recipes.qc_utils import (
    calculate_qc_metrics,
    summarize_qc_by_sample,
    compute_adaptive_thresholds,
    flag_outlier_cells,
    plot_qc_metrics,
    plot_qc_by_group,
    filter_cells_and_genes,
)
from rnaseq_recipes.doublets import (
    detect_doublets,
    transfer_doublet_calls,
    plot_doublet_scores_umap,
)
from rnaseq_recipes.processing import (
    normalize_and_scale,
    score_cell_cycle,
    regress_out_cell_cycle,
    run_pca,
    integrate_samples,
    run_neighbors_umap_clustering,
    compute_batch_mixing,
    plot_embeddings,
    plot_split_umap,
)
from rnaseq_recipes.markers import (
    compute_top_markers_per_cluster,
    find_all_conserved_markers,
    compare_top_markers_to_expected,
    plot_marker_genes,
)
from rnaseq_recipes.annotation import (
    MARKER_GENES,
    annotate_clusters_from_table,
    assign_celltypes_by_cluster_scores,
    assign_celltypes_by_scores,
    create_cluster_aggregated_labels,
    plot_cell_type_summary,
)
from rnaseq_recipes.differential_expression import (
    create_condition_column,
    create_pseudobulk,
    run_de_for_celltype,
    plot_de_summary,
)

# Configure scanpy
sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")


def qc_and_filter(adata, plots_dir):
    """QC metrics, doublet detection on pre-filtered cells, final filtering"""
    adata = calculate_qc_metrics(adata)
    plot_qc_metrics(adata, save_dir=plots_dir)
    plot_qc_by_group(adata, groupby="orig.ident", save_dir=plots_dir)
    print(summarize_qc_by_sample(adata).to_string())

    if params.ADAPTIVE_FILTERING["use_adaptive"]:
        thresholds = compute_adaptive_thresholds(adata)
        thresholds.to_csv(plots_dir / "adaptive_qc_thresholds.csv")
        adata = flag_outlier_cells(adata, thresholds)

    # Doublets are scored on cells passing the basic filters
    print("\nApplying initial QC filters for doublet detection...")
    filters = params.CELL_FILTERS
    obs = adata.obs
    keep = (
        (obs.n_genes_by_counts >= filters["min_genes"])
        & (obs.n_genes_by_counts < filters["max_genes"])
        & (obs.percent_mt < filters["max_mt_pct"])
    )
    adata_for_doublets = adata[keep.to_numpy()].copy()
    print(
        f"Cells for doublet detection: {adata_for_doublets.n_obs} (from {adata.n_obs})"
    )

    adata_for_doublets = detect_doublets(adata_for_doublets, save_dir=plots_dir)
    adata = transfer_doublet_calls(adata, adata_for_doublets)

    adata = filter_cells_and_genes(
        adata,
        min_genes=filters["min_genes"],
        max_genes=filters["max_genes"],
        max_mt_pct=filters["max_mt_pct"],
        min_counts=filters["min_counts"],
        max_counts=filters["max_counts"],
        max_ribo_pct=filters["max_ribo_pct"],
        min_complexity=filters["min_complexity"],
    )
    return adata


def annotate(adata, annotation_csv, plots_dir, label_mode="cell", purity_threshold=0.6):
    """Manual table labels when given, marker-score labels otherwise

    Args:
        label_mode: "cell" scores and labels every cell, then summarizes each
            cluster (dominant type or Mixed); "cluster" labels whole clusters
            from their median scores.
    """
    if annotation_csv:
        mapping = load_annotation_table(annotation_csv)
        annotate_clusters_from_table(adata, mapping)
    elif label_mode == "cell":
        assign_celltypes_by_scores(adata, MARKER_GENES)
        create_cluster_aggregated_labels(
            adata, celltype_col="celltype", purity_threshold=purity_threshold
        )
    elif label_mode == "cluster":
        cluster_scores = assign_celltypes_by_cluster_scores(adata, MARKER_GENES)
        cluster_scores.to_csv(plots_dir / "cluster_annotation_scores.csv")
    else:
        raise ValueError(f"Unknown label mode '{label_mode}', use 'cell' or 'cluster'")

    color_keys = ["celltype", "leiden", "orig.ident"]
    if "celltype_cluster" in adata.obs:
        color_keys.insert(1, "celltype_cluster")
    plot_embeddings(
        adata,
        color_keys=color_keys,
        save_dir=plots_dir,
        filename="umap_celltypes.png",
    )
    plot_cell_type_summary(adata, groupby="orig.ident", save_dir=plots_dir)
    return adata


def find_markers(adata, condition_key, results_dir, plots_dir):
    """Cluster markers filtered by MARKER_PARAMS, conserved markers, panel checks"""
    marker_params = params.MARKER_PARAMS
    markers_df = compute_top_markers_per_cluster(
        adata,
        method=marker_params["method"],
        n_top=marker_params["n_top"],
        pval_adj_cutoff=marker_params["pval_adj_cutoff"],
        min_logfc=marker_params["logfc_threshold"],
        min_pct=marker_params["min_pct"],
        save_dir=results_dir,
    )
    if condition_key:
        find_all_conserved_markers(
            adata,
            condition_key=condition_key,
            min_cells_per_condition=marker_params["min_cells_per_condition"],
            method=marker_params["method"],
            save_dir=results_dir,
        )
    compare_top_markers_to_expected(
        adata, MARKER_GENES, markers_df=markers_df, save_dir=plots_dir
    )
    plot_marker_genes(adata, MARKER_GENES, groupby="leiden", save_dir=plots_dir)
    return markers_df


def condition_de(adata, counts_adata, condition_key, reference, results_dir, plots_dir):
    """Pseudobulk DESeq2 of every condition against the reference per cell type"""
    levels = list(adata.obs[condition_key].cat.categories)
    if reference is None:
        reference = levels[0]
    if reference not in levels:
        raise ValueError(f"Reference condition '{reference}' not in {levels}")
    contrasts = [(f"{lv}_vs_{reference}", lv, reference) for lv in levels if lv != reference]

    pb_df, sample_info_df = create_pseudobulk(
        adata, meta_cols=[condition_key], counts_adata=counts_adata
    )
    if sample_info_df.empty:
        return None

    de_results_list = []
    for cell_type in sorted(sample_info_df["celltype"].unique()):
        de_result = run_de_for_celltype(
            pb_df,
            sample_info_df,
            cell_type,
            contrasts,
            de_params=params.DE_PARAMS,
            condition_col=condition_key,
        )
        if de_result is not None:
            de_results_list.append(de_result)

    if not de_results_list:
        print("No differential expression results generated")
        return None

    all_de_results = pd.concat(de_results_list, ignore_index=True)
    out = results_dir / "pseudobulk_de_results.csv"
    all_de_results.to_csv(out, index=False)
    print(f"  Saved: {out}")

    plot_de_summary(
        all_de_results,
        fdr_threshold=params.DE_PARAMS["fdr_threshold"],
        fc_threshold=params.DE_PARAMS["fc_threshold"],
        save_path=plots_dir / "de_summary_heatmap.png",
    )
    return all_de_results


def main(args):
    """Main analysis pipeline"""
    print("Starting single-cell analysis pipeline...")

    plots_dir = Path(args.plots_dir)
    plots_dir.mkdir(parents=True, exist_ok=True)
    results_dir = Path(args.results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")

    params.apply_preset(args.preset)
    params.set_species(args.species)
    if args.adaptive:
        params.ADAPTIVE_FILTERING["use_adaptive"] = True
    print("\n" + params.get_filter_summary() + "\n")

    # Step 1: Load and merge data
    adata = load_and_merge_samples(args.data_dir, args.samples, args.file_pattern)

    # Step 2: Add metadata
    condition_key = None
    if args.metadata:
        metadata_df = read_sample_metadata(args.metadata)
        adata = add_metadata(adata, metadata_df)
        if args.condition_cols:
            adata = create_condition_column(adata, args.condition_cols)
            condition_key = "condition"

    # Step 3: QC, doublets and filtering
    adata = qc_and_filter(adata, plots_dir)
    counts_adata = adata.copy()

    # Step 4: Normalize and scale
    norm = params.NORMALIZATION_PARAMS
    batch_key = params.INTEGRATION_PARAMS["batch_key"]
    adata = normalize_and_scale(
        adata,
        method=args.normalization or norm["method"],
        target_sum=norm["target_sum"],
        n_top_genes=norm["n_top_genes"],
        batch_key=batch_key if adata.obs[batch_key].nunique() > 1 else None,
        max_value=norm["max_scale_value"],
    )

    # Step 5: Cell cycle
    if args.cell_cycle_genes:
        s_genes, g2m_genes = load_cell_cycle_genes(args.cell_cycle_genes)
        adata = score_cell_cycle(adata, s_genes, g2m_genes)
        if norm["regress_cell_cycle"] or args.regress_cell_cycle:
            adata = regress_out_cell_cycle(adata, max_value=norm["max_scale_value"])

    # Step 6: PCA, integration, neighbors, UMAP, clustering
    clustering = params.CLUSTERING_PARAMS
    adata = run_pca(
        adata,
        n_comps=clustering["n_pcs_compute"],
        n_pcs_marked=clustering["n_pcs"],
        save_dir=plots_dir,
    )
    use_rep = integrate_samples(
        adata,
        batch_key=batch_key,
        method=args.integration or params.INTEGRATION_PARAMS["method"],
        max_iter=params.INTEGRATION_PARAMS["max_iter_harmony"],
    )
    adata = run_neighbors_umap_clustering(
        adata,
        use_rep=use_rep,
        n_pcs=clustering["n_pcs"],
        n_neighbors=clustering["n_neighbors"],
        resolution=args.resolution or clustering["resolution"],
        auto_resolution=args.auto_resolution or clustering["auto_resolution"],
        min_cluster_size=clustering["min_cluster_size"],
        save_dir=plots_dir,
    )

    color_keys = ["leiden", "orig.ident"] + ([condition_key] if condition_key else [])
    plot_embeddings(adata, color_keys=color_keys, save_dir=plots_dir)
    plot_doublet_scores_umap(adata, save_dir=plots_dir)
    if condition_key:
        plot_split_umap(adata, split_key=condition_key, save_dir=plots_dir)
    mixing = compute_batch_mixing(adata, batch_key=batch_key)
    mixing.to_csv(results_dir / "cluster_batch_mixing.csv")

    # Step 7: Markers
    find_markers(adata, condition_key, results_dir, plots_dir)

    # Step 8: Annotate cell types
    adata = annotate(adata, args.annotation, plots_dir, label_mode=args.label_mode)

    # Step 9: Condition comparison
    if condition_key:
        condition_de(
            adata, counts_adata, condition_key, args.reference, results_dir, plots_dir
        )

    # Save results
    output_path = results_dir / "annotated_data.h5ad"
    adata.write(output_path)
    print(f"Saved annotated data to {output_path}")

    print("Analysis complete!")
    return adata


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="scRNA-seq QC, integration, clustering, annotation and DE"
    )
    parser.add_argument("--data-dir", required=True, help="Directory with one entry per sample")
    parser.add_argument("--samples", nargs="+", required=True, help="Sample names")
    parser.add_argument(
        "--file-pattern",
        default=None,
        help="CellBender file suffix, e.g. '_filtered.h5' (default: Cell Ranger output)",
    )
    parser.add_argument("--metadata", default=None, help="Per-sample metadata CSV/TSV")
    parser.add_argument(
        "--condition-cols",
        nargs="+",
        default=None,
        help="Metadata columns combined into the condition",
    )
    parser.add_argument("--reference", default=None, help="Reference condition for DE")
    parser.add_argument(
        "--annotation", default=None, help="Manual cluster -> cell type CSV"
    )
    parser.add_argument(
        "--label-mode",
        choices=["cell", "cluster"],
        default="cell",
        help="Cell type labeling mode: 'cell' for per-cell or 'cluster' for cluster-level",
    )
    parser.add_argument(
        "--cell-cycle-genes", default=None, help="Cell cycle gene list or table"
    )
    parser.add_argument(
        "--regress-cell-cycle",
        action="store_true",
        help="Regress S and G2M scores out of the scaled data",
    )
    parser.add_argument(
        "--preset", choices=list(params.QC_PRESETS), default="default", help="QC preset"
    )
    parser.add_argument(
        "--species", choices=list(params.SPECIES_PATTERNS), default="human"
    )
    parser.add_argument("--adaptive", action="store_true", help="Per-sample IQR outlier filtering")
    parser.add_argument("--normalization", choices=params.NORMALIZATION_METHODS, default=None)
    parser.add_argument("--integration", choices=params.INTEGRATION_METHODS, default=None)
    parser.add_argument("--resolution", type=float, default=None, help="Leiden resolution")
    parser.add_argument(
        "--auto-resolution", action="store_true", help="Choose resolution by silhouette sweep"
    )
    parser.add_argument("--plots-dir", default="plots", help="Directory to write plots to")
    parser.add_argument("--results-dir", default="results", help="Directory for tables and .h5ad")
    args = parser.parse_args()

    adata = main(args)
