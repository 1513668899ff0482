#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles Cell Ranger / CellBender matrix loading and merging, sample
metadata tables, annotation tables and gene lists
"""

import pandas as pd
import h5py
import scanpy as sc
from scipy import sparse
import anndata
from pathlib import Path

# Number of S-phase genes at the top of the Tirosh et al. (2016) list
TIROSH_N_S_GENES = 43

CELLRANGER_MATRIX_DIR = Path("outs") / "filtered_feature_bc_matrix"


def _read_table(path, **kwargs):
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Table not found: {path}")
    sep = "\t" if path.suffix in (".tsv", ".txt", ".tab") else ","
    return pd.read_csv(path, sep=sep, **kwargs)


def load_cellbender_h5(file_path):
    """Load CellBender processed h5 file

    Args:
        file_path: Path to the CellBender H5 file

    Returns:
        AnnData object with loaded data
    """
    with h5py.File(file_path, "r") as f:
        matrix = f["matrix"]
        features = matrix["features"]

        X = sparse.csc_matrix(
            (matrix["data"][:], matrix["indices"][:], matrix["indptr"][:]),
            shape=tuple(matrix["shape"][:]),
        )

        gene_names = [x.decode("utf-8") for x in features["name"][:]]
        gene_ids = [x.decode("utf-8") for x in features["id"][:]]
        cell_barcodes = [x.decode("utf-8") for x in matrix["barcodes"][:]]

    # CellBender stores genes x cells, transpose to cells x genes
    if X.shape[0] == len(gene_names) and X.shape[1] == len(cell_barcodes):
        adata = anndata.AnnData(X.T.tocsr())
    else:
        adata = anndata.AnnData(X.tocsr())

    adata.var_names = gene_names
    adata.var["gene_ids"] = gene_ids
    adata.obs_names = cell_barcodes
    adata.var_names_make_unique()

    return adata


def load_10x_sample(sample_path):
    """Load one sample from Cell Ranger output

    Accepts a filtered_feature_bc_matrix.h5 file, a matrix directory
    (matrix.mtx[.gz], features/genes, barcodes) or a Cell Ranger run
    directory containing outs/filtered_feature_bc_matrix.

    Args:
        sample_path: Path to the sample's count matrix

    Returns:
        AnnData object (cells x genes, gene symbols as var_names)
    """
    sample_path = Path(sample_path)

    if sample_path.is_file() and sample_path.suffix == ".h5":
        adata = sc.read_10x_h5(sample_path)
    elif sample_path.is_dir():
        matrix_dir = sample_path
        if (sample_path / CELLRANGER_MATRIX_DIR).is_dir():
            matrix_dir = sample_path / CELLRANGER_MATRIX_DIR
        if not any(matrix_dir.glob("matrix.mtx*")):
            raise FileNotFoundError(f"No matrix.mtx found in {matrix_dir}")
        adata = sc.read_10x_mtx(matrix_dir, var_names="gene_symbols", cache=False)
    else:
        raise FileNotFoundError(f"No count matrix at {sample_path}")

    adata.var_names_make_unique()
    return adata


def load_and_merge_samples(base_path, sample_names, file_pattern=None):
    """Load and merge per-sample count matrices

    Args:
        base_path: Base directory path
        sample_names: List of sample names (one subdirectory each)
        file_pattern: CellBender filename suffix, e.g.
            "_processed_feature_bc_matrix_filtered.h5". If None, samples are
            read as Cell Ranger output from base_path/<sample>.

    Returns:
        Merged AnnData object
    """
    print("Loading count matrices...")

    adatas = []
    for sample in sample_names:
        if file_pattern is not None:
            file_path = Path(base_path) / sample / f"{sample}{file_pattern}"
            print(f"Loading {file_path}")
            adata = load_cellbender_h5(file_path)
        else:
            file_path = Path(base_path) / sample
            print(f"Loading {file_path}")
            adata = load_10x_sample(file_path)

        adata.obs["sample"] = sample
        adata.obs["orig.ident"] = sample

        # Add sample prefix to cell barcodes
        adata.obs_names = [f"{sample}_{barcode}" for barcode in adata.obs_names]
        print(f"  {adata.n_obs:,} cells x {adata.n_vars:,} genes")

        adatas.append(adata)

    adata_merged = anndata.concat(adatas, join="outer", fill_value=0)
    adata_merged.var_names_make_unique()

    print(f"Merged: {adata_merged.n_obs:,} cells x {adata_merged.n_vars:,} genes")

    return adata_merged


def read_sample_metadata(path, sample_col="orig.ident"):
    """Read the per-sample metadata table (CSV or TSV)

    Args:
        path: Path to the metadata table
        sample_col: Column holding sample identifiers

    Returns:
        DataFrame with one row per sample
    """
    metadata_df = _read_table(path)

    if sample_col not in metadata_df.columns:
        raise ValueError(
            f"Metadata table {path} has no '{sample_col}' column "
            f"(columns: {list(metadata_df.columns)})"
        )

    metadata_df[sample_col] = metadata_df[sample_col].astype(str)
    duplicated = metadata_df[sample_col][metadata_df[sample_col].duplicated()]
    if len(duplicated) > 0:
        raise ValueError(
            f"Duplicate samples in metadata table: {sorted(set(duplicated))}"
        )

    return metadata_df


def add_metadata(adata, metadata_df, sample_col="orig.ident"):
    """Add experimental metadata to AnnData object

    Args:
        adata: AnnData object
        metadata_df: Per-sample metadata (see read_sample_metadata)
        sample_col: Column shared by adata.obs and metadata_df

    Returns:
        AnnData object with added metadata
    """
    print("Adding metadata...")

    if sample_col not in adata.obs:
        raise KeyError(f"'{sample_col}' not found in adata.obs")

    lookup = metadata_df.set_index(sample_col)
    samples = adata.obs[sample_col].astype(str)

    missing = sorted(set(samples) - set(lookup.index))
    if missing:
        raise ValueError(f"Samples missing from metadata table: {missing}")

    for col in lookup.columns:
        values = samples.map(lookup[col]).values
        if pd.api.types.is_numeric_dtype(lookup[col]):
            adata.obs[col] = values
            continue
        adata.obs[col] = pd.Categorical(values)
        print(f"  {col}: {', '.join(map(str, adata.obs[col].cat.categories))}")

    return adata


def load_gene_list(path):
    """Read a plain gene list, one gene per line"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Gene list not found: {path}")

    genes = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            genes.append(line)
    return genes


def load_cell_cycle_genes(path):
    """Load S and G2/M phase marker genes

    Supports either a table with 'gene' and 'phase' columns (phase S or
    G2M) or the plain Tirosh et al. list, where the first 43 genes mark
    S phase and the remaining genes G2/M.

    Returns:
        Tuple of (s_genes, g2m_genes)
    """
    path = Path(path)
    first_line = load_gene_list(path)[:1]

    if first_line and any(sep in first_line[0] for sep in (",", "\t")):
        table = _read_table(path)
        table.columns = [c.lower() for c in table.columns]
        if not {"gene", "phase"} <= set(table.columns):
            raise ValueError(
                f"Cell cycle table {path} needs 'gene' and 'phase' columns"
            )
        phase = table["phase"].astype(str).str.upper().str.replace("/", "")
        s_genes = table.loc[phase == "S", "gene"].tolist()
        g2m_genes = table.loc[phase == "G2M", "gene"].tolist()
    else:
        genes = load_gene_list(path)
        s_genes = genes[:TIROSH_N_S_GENES]
        g2m_genes = genes[TIROSH_N_S_GENES:]

    print(f"Cell cycle genes: {len(s_genes)} S, {len(g2m_genes)} G2M")
    return s_genes, g2m_genes


def load_annotation_table(path, cluster_col="cluster", label_col="celltype"):
    """Load a manual cluster -> cell type annotation table

    Returns:
        Dictionary mapping cluster id (str) to cell type label
    """
    table = _read_table(path, dtype=str)

    for col in (cluster_col, label_col):
        if col not in table.columns:
            raise ValueError(f"Annotation table {path} has no '{col}' column")

    table = table[[cluster_col, label_col]].dropna()
    table = table.apply(lambda col: col.str.strip()).drop_duplicates()

    conflicts = table[cluster_col][table[cluster_col].duplicated()]
    if len(conflicts) > 0:
        raise ValueError(
            f"Clusters with more than one label: {sorted(set(conflicts))}"
        )

    return dict(zip(table[cluster_col], table[label_col]))
