from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from scartifacts import enrichment
from scartifacts.enrichment import (
    compute_rank_vector,
    plot_enrichment,
    run_enrichr,
    run_prerank,
    standardize_enrichment_columns,
)


def _enrichr_table():
    return pd.DataFrame(
        {
            "Gene_set": ["MSigDB_Hallmark_2020"] * 3,
            "Term": ["TNF-alpha Signaling via NF-kB", "Hypoxia", "Apoptosis"],
            "Overlap": ["6/200", "3/200", "1/161"],
            "P-value": [1e-8, 1e-3, 0.4],
            "Adjusted P-value": [3e-8, 1.5e-3, 0.4],
            "Genes": ["FOS;JUN;EGR1;IER2;KLF6;ZFP36", "FOS;JUN;KLF6", "JUN"],
        }
    )


def _prerank_table():
    return pd.DataFrame(
        {
            "Name": ["prerank"] * 2,
            "Term": ["HALLMARK_TNFA_SIGNALING_VIA_NFKB", "HALLMARK_OXIDATIVE_PHOSPHORYLATION"],
            "ES": [0.8, -0.5],
            "NES": [2.1, -1.4],
            "NOM p-val": [0.0, 0.03],
            "FDR q-val": [0.0, 0.08],
            "Lead_genes": ["FOS;JUN", "ATP5F1A"],
        }
    )


@pytest.fixture
def de_results():
    rng = np.random.default_rng(0)
    genes = [f"G{i}" for i in range(30)]
    return pd.DataFrame(
        {
            "gene": genes,
            "logFC": rng.normal(size=30),
            "P.Value": rng.uniform(1e-6, 1, size=30),
        }
    )


def test_standardize_columns():
    enrichr = standardize_enrichment_columns(_enrichr_table())
    assert {"gene_set", "term", "pval", "fdr", "genes"} <= set(enrichr.columns)

    prerank = standardize_enrichment_columns(_prerank_table())
    assert {"term", "es", "nes", "pval", "fdr", "lead_genes"} <= set(prerank.columns)


def test_run_enrichr(monkeypatch, tmp_path):
    calls = {}

    def fake_enrichr(**kwargs):
        calls.update(kwargs)
        return SimpleNamespace(results=_enrichr_table())

    monkeypatch.setattr(enrichment.gp, "enrichr", fake_enrichr)

    results = run_enrichr(["FOS", "JUN", "FOS", ""], gene_sets=["MSigDB_Hallmark_2020"], outdir=tmp_path)

    assert calls["gene_list"] == ["FOS", "JUN"]
    assert calls["outdir"] == str(tmp_path)
    assert calls["no_plot"] is True
    assert results["fdr"].tolist() == [3e-8, 1.5e-3, 0.4]


def test_run_enrichr_empty_list(monkeypatch):
    monkeypatch.setattr(enrichment.gp, "enrichr", lambda **kwargs: pytest.fail("should not be called"))
    assert run_enrichr([]) is None


def test_rank_vector_logfc(de_results):
    ranking = compute_rank_vector(de_results)

    assert ranking.index.is_unique
    assert ranking.is_monotonic_decreasing
    assert ranking.loc["G0"] == pytest.approx(de_results.loc[0, "logFC"])


def test_rank_vector_signed_p():
    de_results = pd.DataFrame(
        {"gene": ["A", "B", "C"], "logFC": [1.0, -2.0, 0.5], "P.Value": [1e-2, 1e-3, 0.0]}
    )
    ranking = compute_rank_vector(de_results, metric="signed_p")

    assert ranking.index.tolist() == ["C", "A", "B"]
    assert ranking["A"] == pytest.approx(2.0)
    assert ranking["B"] == pytest.approx(-6.0)
    # p = 0 is clipped
    assert ranking["C"] == pytest.approx(150.0)


def test_rank_vector_deduplicates_and_breaks_ties():
    de_results = pd.DataFrame(
        {"gene": ["A", "A", "B", "C"], "logFC": [0.5, -2.0, 1.0, 1.0]}
    )
    ranking = compute_rank_vector(de_results)

    assert sorted(ranking.index) == ["A", "B", "C"]
    assert ranking["A"] == pytest.approx(-2.0)
    assert ranking.iloc[0] > ranking.iloc[1]


def test_rank_vector_leaves_untied_scores_alone():
    logfc = [3.0, 1.0, 1.0, 1.0 - 1e-13, -0.5]
    de_results = pd.DataFrame({"gene": ["A", "B", "C", "D", "E"], "logFC": logfc})

    ranking = compute_rank_vector(de_results)

    assert ranking.is_unique
    assert ranking.is_monotonic_decreasing
    assert ranking.index[-1] == "E"
    assert ranking["A"] == 3.0
    assert ranking["D"] == 1.0 - 1e-13
    assert ranking["E"] == -0.5
    assert sorted([ranking["B"], ranking["C"]], reverse=True)[0] == 1.0


def test_rank_vector_errors(de_results):
    with pytest.raises(ValueError, match="Unknown ranking metric"):
        compute_rank_vector(de_results, metric="tstat")
    with pytest.raises(ValueError, match="P.Value"):
        compute_rank_vector(de_results.drop(columns="P.Value"), metric="signed_p")
    assert compute_rank_vector(de_results.iloc[:0]).empty


def test_run_prerank(monkeypatch, de_results):
    calls = {}

    def fake_prerank(**kwargs):
        calls.update(kwargs)
        return SimpleNamespace(res2d=_prerank_table())

    monkeypatch.setattr(enrichment.gp, "prerank", fake_prerank)

    results = run_prerank(de_results, gene_sets={"set": ["G1", "G2"]}, min_size=5, permutation_num=10)

    assert calls["rnk"].size == 30
    assert calls["min_size"] == 5
    assert calls["outdir"] is None
    assert results["nes"].tolist() == [2.1, -1.4]
    assert (results["ranking_size"] == 30).all()


def test_run_prerank_short_ranking(monkeypatch, de_results):
    monkeypatch.setattr(enrichment.gp, "prerank", lambda **kwargs: pytest.fail("should not be called"))
    assert run_prerank(de_results, min_size=50) is None


def test_plot_enrichment(tmp_path):
    plot_enrichment(standardize_enrichment_columns(_prerank_table()), save_path=tmp_path / "gsea.png")
    plot_enrichment(standardize_enrichment_columns(_enrichr_table()), top_n=2, save_path=tmp_path / "enrichr.png")
    plot_enrichment(None, save_path=tmp_path / "none.png")

    assert (tmp_path / "gsea.png").exists()
    assert (tmp_path / "enrichr.png").exists()
    assert not (tmp_path / "none.png").exists()
