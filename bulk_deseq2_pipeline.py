#!/usr/bin/env python3
"""
Bulk RNA-seq differential expression with DESeq2

This script performs:
1. Count matrix and sample table loading
2. Low-expression gene filtering
3. DESeq2 model fitting and Wald tests for every contrast
4. Variance-stabilized sample QC (PCA, sample distances)
5. Volcano, MA and top-gene heatmap plots per contrast

python bulk_deseq2_pipeline.py --counts featureCounts.txt --samples samples.csv \
    --factor condition --reference control
"""

import warnings
import argparse
import matplotlib
from pathlib import Path

from rnaseq_recipes.params import BULK_DE_PARAMS
from rnaseq_recipes.bulk_rnaseq import (
    load_count_matrix,
    load_sample_table,
    align_counts_and_metadata,
    filter_low_counts,
    run_deseq2,
    get_contrast_results,
    all_pairwise_contrasts,
    normalized_counts,
    variance_stabilized_counts,
    plot_sample_pca,
    plot_sample_distance_heatmap,
    plot_top_gene_heatmap,
    plot_gene_counts,
    write_results,
)
from rnaseq_recipes.differential_expression import plot_volcano, plot_ma

# Suppress warnings
warnings.filterwarnings("ignore")


def main(args):
    """Main analysis pipeline"""
    print("Starting bulk RNA-seq DESeq2 analysis...")

    out_dir = Path(args.out_dir)
    plots_dir = out_dir / "plots"
    plots_dir.mkdir(parents=True, exist_ok=True)

    matplotlib.use("Agg")

    factor = args.factor or BULK_DE_PARAMS["design_factor"]
    reference = args.reference or BULK_DE_PARAMS["reference_level"]

    # Step 1: Load inputs
    counts = load_count_matrix(args.counts)
    metadata = load_sample_table(args.samples, sample_col=args.sample_col)
    counts, metadata = align_counts_and_metadata(counts, metadata)
    if factor not in metadata.columns:
        raise KeyError(f"'{factor}' not found in sample table")

    # Step 2: Filter lowly expressed genes
    group_sizes = metadata[factor].value_counts().tolist()
    counts = filter_low_counts(
        counts,
        min_cpm=args.min_cpm,
        min_samples=args.min_samples,
        group_sizes=group_sizes,
    )

    # Step 3: DESeq2
    dds = run_deseq2(
        counts,
        metadata,
        design_factor=factor,
        reference_level=reference,
        n_cpus=args.n_cpus,
    )
    levels = sorted(metadata[factor].astype(str).unique())
    if reference is None:
        reference = levels[0]
    contrasts = all_pairwise_contrasts(
        levels, reference_level=None if args.all_pairs else reference
    )

    # Step 4: Sample-level QC on variance-stabilized counts
    vst = variance_stabilized_counts(dds)
    norm = normalized_counts(dds)
    vst.to_csv(out_dir / "vst_counts.csv")
    norm.to_csv(out_dir / "normalized_counts.csv")
    print(f"  Saved: {out_dir / 'vst_counts.csv'}")
    print(f"  Saved: {out_dir / 'normalized_counts.csv'}")

    plot_sample_pca(vst, metadata, color_by=factor, save_path=plots_dir / "sample_pca.png")
    plot_sample_distance_heatmap(
        vst, metadata, color_by=factor, save_path=plots_dir / "sample_distances.png"
    )

    # Step 5: Contrasts
    all_results = {}
    for test_level, ref_level in contrasts:
        name = f"{test_level}_vs_{ref_level}"
        results = get_contrast_results(
            dds,
            factor,
            test_level,
            ref_level,
            alpha=args.alpha,
            shrink_lfc=False if args.no_shrink else None,
        )
        write_results(results, out_dir, name)

        fc = BULK_DE_PARAMS["fc_threshold"]
        plot_volcano(
            results,
            name,
            fc_threshold=fc,
            pval_threshold=args.alpha,
            save_path=plots_dir / f"volcano_{name}.png",
        )
        plot_ma(
            results,
            name,
            pval_threshold=args.alpha,
            save_path=plots_dir / f"ma_{name}.png",
        )
        plot_top_gene_heatmap(
            vst,
            metadata,
            results,
            color_by=factor,
            save_path=plots_dir / f"top_genes_heatmap_{name}.png",
        )

        top_gene = results.dropna(subset=["adj.P.Val"])["gene"].head(1)
        if len(top_gene):
            plot_gene_counts(
                norm,
                metadata,
                top_gene.iloc[0],
                color_by=factor,
                save_path=plots_dir / f"counts_{name}_{top_gene.iloc[0]}.png",
            )
        all_results[name] = results

    print("Analysis complete!")
    return dds, all_results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Bulk RNA-seq DESeq2 analysis")
    parser.add_argument("--counts", required=True, help="Count matrix (featureCounts or CSV/TSV)")
    parser.add_argument("--samples", required=True, help="Sample table (CSV/TSV)")
    parser.add_argument("--sample-col", default="sample", help="Sample name column")
    parser.add_argument("--factor", default=None, help="Design factor column")
    parser.add_argument("--reference", default=None, help="Reference level of the factor")
    parser.add_argument(
        "--all-pairs", action="store_true", help="Test every pair of levels"
    )
    parser.add_argument("--min-cpm", type=float, default=None)
    parser.add_argument("--min-samples", type=int, default=None)
    parser.add_argument("--alpha", type=float, default=BULK_DE_PARAMS["alpha"])
    parser.add_argument("--no-shrink", action="store_true", help="Skip LFC shrinkage")
    parser.add_argument("--n-cpus", type=int, default=1)
    parser.add_argument("--out-dir", default="bulk_results", help="Output directory")
    args = parser.parse_args()

    dds, results = main(args)
