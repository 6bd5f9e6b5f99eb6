import numpy as np
import pytest

from scartifacts import qc
from scartifacts.qc import (
    calculate_qc_metrics,
    detect_doublets,
    filter_cells_and_genes,
    filtering_report,
    plot_qc_by_condition,
    plot_qc_metrics,
    summarize_qc_by_condition,
)


class FakeScrublet:
    """Stands in for scrublet.Scrublet: scores rise linearly across the cells"""

    def __init__(self, counts_matrix, expected_doublet_rate=0.06):
        self.counts = np.asarray(counts_matrix.todense())
        self.threshold_ = 0.5

    def scrub_doublets(self, **kwargs):
        scores = np.linspace(0, 1, self.counts.shape[0])
        return scores, scores > self.threshold_


def test_qc_metrics_percentages(pbmc_counts):
    adata = calculate_qc_metrics(pbmc_counts)

    X = np.asarray(adata.X.todense())
    mt = adata.var_names.str.startswith("MT-")
    expected = X[:, mt].sum(axis=1) / X.sum(axis=1) * 100

    np.testing.assert_allclose(adata.obs["percent_mt"], expected, rtol=1e-5)
    assert adata.var["ribo"].sum() == 5
    assert (adata.obs["percent_ribo"] > 0).all()
    assert (adata.obs["total_counts"] > 0).all()


def test_qc_summary_by_condition(pbmc_counts):
    adata = calculate_qc_metrics(pbmc_counts)
    summary = summarize_qc_by_condition(adata, condition="time")

    assert list(summary.index) == ["0h", "24h"]
    assert summary["n_cells"].tolist() == [180, 180]
    assert list(summary.columns) == ["n_cells", "median_counts", "median_genes", "median_pct_mt"]


def test_qc_summary_requires_condition(pbmc_counts):
    adata = calculate_qc_metrics(pbmc_counts)
    with pytest.raises(ValueError, match="culture"):
        summarize_qc_by_condition(adata, condition="culture")


def test_doublets_skip_small_libraries(pbmc_counts):
    adata = detect_doublets(pbmc_counts, min_cells_per_library=10_000)
    assert (adata.obs["doublet_score"] == 0).all()
    assert not adata.obs["predicted_doublet"].any()


def test_doublets_per_library(pbmc_counts, monkeypatch, tmp_path):
    monkeypatch.setattr(qc.scr, "Scrublet", FakeScrublet)

    adata = detect_doublets(pbmc_counts, min_cells_per_library=10, save_dir=tmp_path)

    for library in ["L1", "L2"]:
        scores = adata.obs.loc[adata.obs["library"] == library, "doublet_score"]
        assert scores.min() == 0 and scores.max() == 1
    assert adata.obs["predicted_doublet"].sum() > 0
    assert (tmp_path / "doublet_score_histograms.png").exists()


def test_doublets_manual_threshold(pbmc_counts, monkeypatch):
    monkeypatch.setattr(qc.scr, "Scrublet", FakeScrublet)
    adata = detect_doublets(pbmc_counts, min_cells_per_library=10, manual_threshold=0.9)
    assert (adata.obs.loc[adata.obs["predicted_doublet"], "doublet_score"] > 0.9).all()


def test_filtering_removes_doublets_and_high_mt(pbmc_counts):
    adata = calculate_qc_metrics(pbmc_counts)
    adata.obs["predicted_doublet"] = False
    adata.obs.iloc[:5, adata.obs.columns.get_loc("predicted_doublet")] = True
    adata.obs.iloc[5:10, adata.obs.columns.get_loc("percent_mt")] = 50.0

    filtered = filter_cells_and_genes(
        adata,
        min_genes=10,
        max_genes=10_000,
        max_mt_pct=20,
        min_counts=None,
        max_counts=None,
        min_cells=3,
    )

    assert filtered.n_obs == adata.n_obs - 10
    assert not filtered.obs["predicted_doublet"].any()
    assert adata.n_obs == 360  # input untouched

    report = filtering_report(adata, filtered)
    assert report["n_before"].sum() == 360
    assert report["n_after"].sum() == 350
    assert (report["pct_retained"] <= 100).all()


def test_filtering_on_counts(pbmc_counts):
    adata = calculate_qc_metrics(pbmc_counts)
    cutoff = float(adata.obs["total_counts"].median())
    filtered = filter_cells_and_genes(
        adata, min_genes=0, max_genes=10_000, max_mt_pct=100, min_counts=cutoff, max_counts=None, min_cells=0
    )
    assert (filtered.obs["total_counts"] >= cutoff).all()


def test_qc_plots_written(pbmc_counts, tmp_path):
    adata = calculate_qc_metrics(pbmc_counts)
    plot_qc_metrics(adata, save_dir=tmp_path)
    plot_qc_by_condition(adata, condition="time", save_dir=tmp_path)

    assert (tmp_path / "qc_violin_plots.png").exists()
    assert (tmp_path / "qc_scatter_plots.png").exists()
    assert (tmp_path / "qc_by_time.png").exists()
