#!/usr/bin/env python3
"""
Analysis parameters for the single-cell and bulk RNA-seq recipes

This file centralizes all thresholds used in the pipelines.
Modify these values (or call apply_preset / set_species) to adjust
filtering stringency and downstream settings.
"""

# QC presets, selected with apply_preset()
QC_PRESETS = {
    "default": {
        "min_genes": 200,
        "max_genes": 6000,
        "min_counts": 500,
        "max_counts": 50000,
        "max_mt_pct": 10,
        "max_ribo_pct": None,
        "min_complexity": 0.8,
    },
    "stringent": {
        "min_genes": 500,
        "max_genes": 5000,
        "min_counts": 1000,
        "max_counts": 40000,
        "max_mt_pct": 5,
        "max_ribo_pct": None,
        "min_complexity": 0.8,
    },
    "permissive": {
        "min_genes": 100,
        "max_genes": 8000,
        "min_counts": 250,
        "max_counts": 60000,
        "max_mt_pct": 20,
        "max_ribo_pct": None,
        "min_complexity": None,
    },
}

# Cell-level filters
CELL_FILTERS = dict(QC_PRESETS["default"])

# Gene-level filters
GENE_FILTERS = {
    "min_cells": 10,  # Minimum cells expressing a gene
}

# Mitochondrial and ribosomal gene patterns per organism
SPECIES_PATTERNS = {
    "human": {"mt_pattern": "MT-", "ribo_pattern": r"^RP[SL]"},
    "mouse": {"mt_pattern": "mt-", "ribo_pattern": r"^Rp[sl]"},
}

GENE_PATTERNS = dict(SPECIES_PATTERNS["human"])

# Doublet detection parameters
DOUBLET_PARAMS = {
    "expected_doublet_rate": 0.06,  # ~0.8% per 1,000 recovered cells on 10x v3
    "manual_threshold": None,  # None = Scrublet's automatic threshold
    "max_auto_threshold": 0.4,  # Cap for automatic thresholds
    "min_counts": 2,
    "min_cells": 3,
    "min_gene_variability_pctl": 85,
    "n_prin_comps": 30,
    "min_cells_per_sample": 100,  # Samples below this are not scored
}

# Sample-specific adaptive filtering (optional)
ADAPTIVE_FILTERING = {
    "use_adaptive": False,  # Whether to use IQR-based adaptive thresholds
    "iqr_multiplier": 3,  # Number of IQRs for outlier detection
    "metrics": ["total_counts", "n_genes_by_counts", "percent_mt"],
}

NORMALIZATION_PARAMS = {
    "method": "lognorm",  # "lognorm" or "pearson_residuals"
    "target_sum": 1e4,
    "n_top_genes": 2000,
    "max_scale_value": 10,
    "regress_cell_cycle": False,
}

INTEGRATION_PARAMS = {
    "method": "harmony",  # "harmony" or "none"
    "batch_key": "orig.ident",
    "max_iter_harmony": 10,
}

CLUSTERING_PARAMS = {
    "n_pcs_compute": 50,
    "n_pcs": 30,
    "n_neighbors": 15,
    "resolution": 0.5,
    "auto_resolution": False,
    "min_cluster_size": 20,
}

MARKER_PARAMS = {
    "method": "wilcoxon",
    "n_top": 30,
    "min_pct": 0.25,  # Minimum fraction of cluster cells expressing a marker
    "logfc_threshold": 0.25,
    "pval_adj_cutoff": 0.05,
    "min_cells_per_condition": 3,
}

# Pseudobulk differential expression
DE_PARAMS = {
    "min_cells": 10,  # Cells per sample x cell type to form a pseudobulk sample
    "min_count": 5,
    "min_samples_expr": 2,
    "min_samples_per_group": 2,
    "min_genes": 100,
    "fdr_threshold": 0.05,
    "fc_threshold": 0.5,
}

BULK_DE_PARAMS = {
    "design_factor": "condition",
    "reference_level": None,  # None = first level in sorted order
    "min_cpm": 1.0,
    "min_samples": None,  # None = smallest group size
    "alpha": 0.05,
    "fc_threshold": 1.0,
    "shrink_lfc": True,
    "n_top_heatmap": 50,
    "n_top_variable": 500,
}

NORMALIZATION_METHODS = ("lognorm", "pearson_residuals")
INTEGRATION_METHODS = ("harmony", "none")


def apply_preset(name):
    """Replace the cell-level filters with one of QC_PRESETS"""
    if name not in QC_PRESETS:
        raise KeyError(
            f"Unknown QC preset '{name}'. Options: {', '.join(QC_PRESETS)}"
        )
    CELL_FILTERS.clear()
    CELL_FILTERS.update(QC_PRESETS[name])
    validate_filters()
    return CELL_FILTERS


def set_species(name):
    """Switch mitochondrial/ribosomal gene patterns to another organism"""
    if name not in SPECIES_PATTERNS:
        raise KeyError(
            f"Unknown species '{name}'. Options: {', '.join(SPECIES_PATTERNS)}"
        )
    GENE_PATTERNS.clear()
    GENE_PATTERNS.update(SPECIES_PATTERNS[name])
    return GENE_PATTERNS


# Filtering summary messages
def get_filter_summary():
    """Return a formatted summary of current filter settings"""
    summary = [
        "=== QC Filter Settings ===",
        "\nCell-level filters:",
        f"  - Genes per cell: {CELL_FILTERS['min_genes']} - {CELL_FILTERS['max_genes']}",
        f"  - Counts per cell: {CELL_FILTERS['min_counts']} - {CELL_FILTERS['max_counts']}",
        f"  - Max mitochondrial %: {CELL_FILTERS['max_mt_pct']}%",
    ]

    if CELL_FILTERS["max_ribo_pct"]:
        summary.append(f"  - Max ribosomal %: {CELL_FILTERS['max_ribo_pct']}%")
    if CELL_FILTERS["min_complexity"]:
        summary.append(
            f"  - Min complexity (log10 genes/UMI): {CELL_FILTERS['min_complexity']}"
        )

    summary.extend(
        [
            "\nGene-level filters:",
            f"  - Min cells expressing: {GENE_FILTERS['min_cells']}",
            f"  - Mitochondrial prefix: {GENE_PATTERNS['mt_pattern']}",
            "\nDoublet detection:",
            f"  - Expected rate: {DOUBLET_PARAMS['expected_doublet_rate']*100}%",
            "\nIntegration:",
            f"  - Method: {INTEGRATION_PARAMS['method']} (batch key: {INTEGRATION_PARAMS['batch_key']})",
        ]
    )

    if ADAPTIVE_FILTERING["use_adaptive"]:
        summary.append(
            f"\nAdaptive filtering: {ADAPTIVE_FILTERING['iqr_multiplier']} x IQR per sample"
        )

    return "\n".join(summary)


# Validation function
def validate_filters():
    """Validate that filter parameters make sense"""
    errors = []

    # Check min/max relationships
    if CELL_FILTERS["min_genes"] >= CELL_FILTERS["max_genes"]:
        errors.append("min_genes must be less than max_genes")

    if (
        CELL_FILTERS["min_counts"] is not None
        and CELL_FILTERS["max_counts"] is not None
        and CELL_FILTERS["min_counts"] >= CELL_FILTERS["max_counts"]
    ):
        errors.append("min_counts must be less than max_counts")

    # Check percentage bounds
    if not 0 <= CELL_FILTERS["max_mt_pct"] <= 100:
        errors.append("max_mt_pct must be between 0 and 100")

    if CELL_FILTERS["max_ribo_pct"] and not 0 <= CELL_FILTERS["max_ribo_pct"] <= 100:
        errors.append("max_ribo_pct must be between 0 and 100")

    if CELL_FILTERS["min_complexity"] and not 0 < CELL_FILTERS["min_complexity"] <= 1:
        errors.append("min_complexity must be between 0 and 1")

    # Check doublet parameters
    if not 0 < DOUBLET_PARAMS["expected_doublet_rate"] < 1:
        errors.append("expected_doublet_rate must be between 0 and 1")

    threshold = DOUBLET_PARAMS["manual_threshold"]
    if threshold is not None and not 0 < threshold < 1:
        errors.append("manual_threshold must be between 0 and 1")

    if NORMALIZATION_PARAMS["method"] not in NORMALIZATION_METHODS:
        errors.append(
            f"normalization method must be one of {NORMALIZATION_METHODS}"
        )

    if INTEGRATION_PARAMS["method"] not in INTEGRATION_METHODS:
        errors.append(f"integration method must be one of {INTEGRATION_METHODS}")

    if CLUSTERING_PARAMS["n_pcs"] > CLUSTERING_PARAMS["n_pcs_compute"]:
        errors.append("n_pcs cannot exceed n_pcs_compute")

    for name, params in (("DE_PARAMS", DE_PARAMS), ("BULK_DE_PARAMS", BULK_DE_PARAMS)):
        fdr = params.get("fdr_threshold", params.get("alpha"))
        if not 0 < fdr < 1:
            errors.append(f"{name} FDR threshold must be between 0 and 1")

    if errors:
        raise ValueError("Filter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_filters()
