import numpy as np
import pandas as pd
import pytest

from rnaseq_recipes.bulk_rnaseq import (
    align_counts_and_metadata,
    all_pairwise_contrasts,
    filter_low_counts,
    get_contrast_results,
    load_count_matrix,
    load_sample_table,
    normalized_counts,
    plot_gene_counts,
    plot_sample_distance_heatmap,
    plot_sample_pca,
    plot_top_gene_heatmap,
    run_deseq2,
    variance_stabilized_counts,
    write_results,
)

SAMPLES = ["ctl1", "ctl2", "ctl3", "trt1", "trt2", "trt3"]
UP_GENES = ["g0", "g1", "g2", "g3"]


def _make_counts(n_genes=300, seed=0):
    rng = np.random.default_rng(seed)
    mu = rng.uniform(20, 1000, size=(n_genes, 1)) * np.ones((1, len(SAMPLES)))
    mu[:4, 3:] *= 6
    size = 20.0
    counts = rng.negative_binomial(size, size / (size + mu))
    return pd.DataFrame(counts, index=[f"g{i}" for i in range(n_genes)], columns=SAMPLES)


def _make_metadata():
    return pd.DataFrame(
        {"condition": ["control"] * 3 + ["treated"] * 3, "batch": ["x", "y", "z"] * 2},
        index=pd.Index(SAMPLES, name="sample"),
    )


@pytest.fixture(scope="module")
def fitted():
    counts = _make_counts()
    metadata = _make_metadata()
    dds = run_deseq2(counts, metadata, design_factor="condition", reference_level="control")
    return counts, metadata, dds


def test_load_featurecounts_output(tmp_path):
    counts = _make_counts(n_genes=5)
    table = pd.DataFrame(
        {
            "Geneid": counts.index,
            "Chr": "chr1",
            "Start": 100,
            "End": 200,
            "Strand": "+",
            "Length": 101,
        }
    )
    for sample in SAMPLES:
        table[f"/data/align/{sample}.sorted.bam"] = counts[sample].to_numpy()

    path = tmp_path / "counts.txt"
    with open(path, "w") as f:
        f.write('# Program:featureCounts v2.0.6; Command:"featureCounts" "-a" "genes.gtf"\n')
        table.to_csv(f, sep="\t", index=False)

    loaded = load_count_matrix(path)

    assert list(loaded.columns) == SAMPLES
    assert list(loaded.index) == list(counts.index)
    np.testing.assert_array_equal(loaded.to_numpy(), counts.to_numpy())


def test_load_plain_count_table(tmp_path):
    counts = _make_counts(n_genes=5)
    path = tmp_path / "counts.csv"
    counts.to_csv(path)

    loaded = load_count_matrix(path)
    assert loaded.shape == (5, 6)
    assert loaded.dtypes.map(pd.api.types.is_integer_dtype).all()


def test_load_count_matrix_rejects_bad_values(tmp_path):
    counts = _make_counts(n_genes=3).astype(float)
    counts.iloc[0, 0] = 2.5
    path = tmp_path / "fractional.csv"
    counts.to_csv(path)
    with pytest.raises(ValueError):
        load_count_matrix(path)

    counts.iloc[0, 0] = -1
    path = tmp_path / "negative.csv"
    counts.to_csv(path)
    with pytest.raises(ValueError):
        load_count_matrix(path)

    with pytest.raises(FileNotFoundError):
        load_count_matrix(tmp_path / "missing.csv")


def test_load_sample_table(tmp_path):
    path = tmp_path / "samples.tsv"
    _make_metadata().reset_index().to_csv(path, sep="\t", index=False)

    metadata = load_sample_table(path)
    assert list(metadata.index) == SAMPLES

    pd.DataFrame({"sample": ["a", "a"]}).to_csv(path, sep="\t", index=False)
    with pytest.raises(ValueError):
        load_sample_table(path)


def test_align_counts_and_metadata():
    counts = _make_counts(n_genes=5).drop(columns=["trt3"])
    metadata = _make_metadata().iloc[::-1]

    aligned_counts, aligned_meta = align_counts_and_metadata(counts, metadata)
    assert list(aligned_counts.columns) == list(aligned_meta.index)
    assert "trt3" not in aligned_meta.index

    other = pd.DataFrame({"condition": ["a"]}, index=["zzz"])
    with pytest.raises(ValueError):
        align_counts_and_metadata(counts, other)


def test_filter_low_counts_uses_smallest_group():
    counts = pd.DataFrame(
        {
            "a": [100, 100, 0],
            "b": [100, 100, 0],
            "c": [100, 0, 1],
            "d": [100, 0, 0],
        },
        index=["everywhere", "two_samples", "one_read"],
    )
    kept = filter_low_counts(counts, min_cpm=1.0, group_sizes=[2, 2])
    assert list(kept.index) == ["everywhere", "two_samples"]

    kept = filter_low_counts(counts, min_cpm=1.0, min_samples=3)
    assert list(kept.index) == ["everywhere"]


def test_all_pairwise_contrasts():
    assert all_pairwise_contrasts(["a", "b", "c"]) == [("b", "a"), ("c", "a"), ("c", "b")]
    assert all_pairwise_contrasts(["a", "b", "c"], reference_level="b") == [
        ("a", "b"),
        ("c", "b"),
    ]
    with pytest.raises(ValueError):
        all_pairwise_contrasts(["a", "b"], reference_level="z")


def test_run_deseq2_argument_checks():
    counts = _make_counts(n_genes=20)
    metadata = _make_metadata()

    with pytest.raises(KeyError):
        run_deseq2(counts, metadata, design_factor="genotype")
    with pytest.raises(ValueError):
        run_deseq2(counts, metadata, design_factor="condition", reference_level="mock")

    single = metadata.assign(condition="control")
    with pytest.raises(ValueError):
        run_deseq2(counts, single, design_factor="condition")


def test_contrast_results_find_upregulated_genes(fitted, tmp_path):
    _, _, dds = fitted

    results = get_contrast_results(
        dds, "condition", "treated", "control", alpha=0.05, shrink_lfc=True, fc_threshold=1.0
    )

    assert list(results.columns[:7]) == [
        "gene", "logFC", "lfcSE", "stat", "P.Value", "adj.P.Val", "AveExpr"
    ]
    assert "logFC_mle" in results.columns
    assert set(results["gene"].head(4)) == set(UP_GENES)
    assert results["adj.P.Val"].dropna().is_monotonic_increasing
    assert results.set_index("gene").loc[UP_GENES, "upregulated"].all()
    # Shrinkage pulls estimates towards zero
    assert results["logFC"].abs().median() <= results["logFC_mle"].abs().median()

    full_path, sig_path = write_results(results, tmp_path, "treated_vs_control")
    assert full_path.exists() and sig_path.exists()
    assert len(pd.read_csv(sig_path)) == int(results["significant"].sum())


def test_contrast_results_without_shrinkage(fitted):
    _, _, dds = fitted
    results = get_contrast_results(dds, "condition", "treated", "control", shrink_lfc=False)

    assert "logFC_mle" not in results.columns
    up = results.set_index("gene").loc[UP_GENES, "logFC"]
    assert (up > 1.5).all()


def test_transformed_counts_and_plots(fitted, tmp_path):
    counts, metadata, dds = fitted

    norm = normalized_counts(dds)
    vst = variance_stabilized_counts(dds)
    assert norm.shape == counts.shape
    assert vst.shape == counts.shape
    assert list(vst.columns) == SAMPLES

    pcs = plot_sample_pca(vst, metadata, color_by="condition", n_top=100,
                          save_path=tmp_path / "pca.png")
    # The treatment effect drives the first component
    by_condition = pcs.groupby("condition")["PC1"].mean()
    assert abs(by_condition["control"] - by_condition["treated"]) > 0

    dist = plot_sample_distance_heatmap(vst, metadata, save_path=tmp_path / "dist.png")
    assert dist.shape == (6, 6)
    assert np.allclose(np.diag(dist), 0)

    results = get_contrast_results(dds, "condition", "treated", "control", shrink_lfc=False)
    zscores = plot_top_gene_heatmap(vst, metadata, results, n_top=10,
                                    save_path=tmp_path / "top.png")
    assert zscores.shape == (10, 6)

    plot_gene_counts(norm, metadata, "g0", save_path=tmp_path / "g0.png")
    with pytest.raises(KeyError):
        plot_gene_counts(norm, metadata, "not_a_gene")

    for name in ("pca.png", "dist.png", "top.png", "g0.png"):
        assert (tmp_path / name).exists()


def _make_three_level(n_genes=200, seed=3):
    """Genes g0-g29 are 8x higher in both B and C than in A"""
    rng = np.random.default_rng(seed)
    samples = [f"{level}{i}" for level in "ABC" for i in range(1, 4)]
    mu = rng.uniform(50, 500, size=(n_genes, 1)) * np.ones((1, len(samples)))
    mu[:30, 3:] *= 8
    size = 20.0
    counts = pd.DataFrame(
        rng.negative_binomial(size, size / (size + mu)),
        index=[f"g{i}" for i in range(n_genes)],
        columns=samples,
    )
    metadata = pd.DataFrame(
        {"condition": [s[0] for s in samples]}, index=pd.Index(samples, name="sample")
    )
    return counts, metadata


def test_shrunken_contrast_between_non_reference_levels():
    counts, metadata = _make_three_level()
    dds = run_deseq2(counts, metadata, design_factor="condition", reference_level="A")
    shared_up = [f"g{i}" for i in range(30)]

    c_vs_b = get_contrast_results(dds, "condition", "C", "B", shrink_lfc=True)
    by_gene = c_vs_b.set_index("gene")
    assert (c_vs_b["contrast"] == "C_vs_B").all()
    assert by_gene.loc[shared_up, "logFC"].abs().median() < 0.5
    assert by_gene.loc[shared_up, "logFC_mle"].abs().median() < 0.5
    assert not by_gene.loc[shared_up, "upregulated"].any()

    c_vs_a = get_contrast_results(dds, "condition", "C", "A", shrink_lfc=True)
    assert c_vs_a.set_index("gene").loc[shared_up, "logFC"].median() > 2


def test_every_pairwise_contrast_has_matching_fold_changes():
    counts, metadata = _make_three_level()
    dds = run_deseq2(counts, metadata, design_factor="condition")
    shared_up = [f"g{i}" for i in range(30)]

    medians = {}
    for test_level, ref_level in all_pairwise_contrasts(["A", "B", "C"]):
        results = get_contrast_results(dds, "condition", test_level, ref_level)
        by_gene = results.set_index("gene")
        medians[f"{test_level}_vs_{ref_level}"] = by_gene.loc[shared_up, "logFC"].median()
        # Shrunken and unshrunken estimates agree in sign for strong effects
        strong = by_gene["logFC_mle"].abs() > 2
        assert (
            np.sign(by_gene.loc[strong, "logFC"]) == np.sign(by_gene.loc[strong, "logFC_mle"])
        ).all()

    assert medians["B_vs_A"] > 2
    assert medians["C_vs_A"] > 2
    assert abs(medians["C_vs_B"]) < 0.5
