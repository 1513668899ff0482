import pytest

from rnaseq_recipes import params


@pytest.fixture(autouse=True)
def _restore_params():
    cell_filters = dict(params.CELL_FILTERS)
    gene_patterns = dict(params.GENE_PATTERNS)
    doublet_params = dict(params.DOUBLET_PARAMS)
    yield
    params.CELL_FILTERS.clear()
    params.CELL_FILTERS.update(cell_filters)
    params.GENE_PATTERNS.clear()
    params.GENE_PATTERNS.update(gene_patterns)
    params.DOUBLET_PARAMS.clear()
    params.DOUBLET_PARAMS.update(doublet_params)


def test_default_settings_validate():
    params.validate_filters()


def test_apply_preset_replaces_filters_in_place():
    filters = params.CELL_FILTERS
    params.apply_preset("stringent")

    assert filters is params.CELL_FILTERS
    assert filters["max_mt_pct"] == params.QC_PRESETS["stringent"]["max_mt_pct"]
    assert filters["min_genes"] == params.QC_PRESETS["stringent"]["min_genes"]


def test_apply_preset_unknown_name():
    with pytest.raises(KeyError):
        params.apply_preset("lenient")


def test_set_species_switches_patterns():
    params.set_species("mouse")
    assert params.GENE_PATTERNS["mt_pattern"] == "mt-"

    params.set_species("human")
    assert params.GENE_PATTERNS["mt_pattern"] == "MT-"

    with pytest.raises(KeyError):
        params.set_species("zebrafish")


def test_validate_filters_reports_every_problem():
    params.CELL_FILTERS["min_genes"] = 9000
    params.CELL_FILTERS["max_mt_pct"] = 150
    params.DOUBLET_PARAMS["expected_doublet_rate"] = 1.5

    with pytest.raises(ValueError) as excinfo:
        params.validate_filters()

    message = str(excinfo.value)
    assert "min_genes" in message
    assert "max_mt_pct" in message
    assert "expected_doublet_rate" in message


def test_filter_summary_mentions_active_settings():
    params.apply_preset("permissive")
    summary = params.get_filter_summary()

    assert "QC Filter Settings" in summary
    assert f"{params.QC_PRESETS['permissive']['max_mt_pct']}%" in summary
    assert "harmony" in summary
