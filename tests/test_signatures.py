import numpy as np
import pandas as pd
import pytest
from scipy import stats

from scartifacts.signatures import (
    compare_fold_changes,
    compare_signatures,
    derive_signature,
    flag_affected_cells,
    plot_signature_overlap,
    plot_signature_scores,
    read_gene_list,
    score_signature,
)

from conftest import ARTIFACT_GENES


@pytest.fixture
def de_results():
    return pd.DataFrame(
        {
            "gene": ["FOS", "JUN", "DUSP1", "CD3E", "LYZ", "FOS", "XIST"],
            "logFC": [3.0, 2.0, 1.0, -2.5, -0.8, 2.8, 0.1],
            "significant": [True, True, True, True, True, True, False],
            "cell_type": ["B", "B", "B", "B", "B", "T", "B"],
            "contrast": ["24h_vs_0h"] * 7,
        }
    )


def test_derive_signature_directions(de_results):
    assert derive_signature(de_results, direction="up") == ["FOS", "JUN", "DUSP1"]
    assert derive_signature(de_results, direction="down") == ["CD3E", "LYZ"]
    assert derive_signature(de_results, direction="both", top_n=3) == ["FOS", "CD3E", "JUN"]
    assert derive_signature(de_results, cell_type="T") == ["FOS"]
    assert derive_signature(de_results, contrast="2h_vs_0h") == []


def test_derive_signature_rejects_direction(de_results):
    with pytest.raises(ValueError, match="Unknown direction"):
        derive_signature(de_results, direction="sideways")


def test_read_gene_list_text(tmp_path):
    path = tmp_path / "signature.txt"
    path.write_text("# dissociation genes\nFOS\nJUN\n\nFOS\nEGR1\n")
    assert read_gene_list(path) == ["FOS", "JUN", "EGR1"]


@pytest.mark.parametrize("suffix, sep", [(".csv", ","), (".tsv", "\t")])
def test_read_gene_list_table(tmp_path, suffix, sep):
    path = tmp_path / f"signature{suffix}"
    pd.DataFrame({"symbol": ["FOS", "JUN", None], "rank": [1, 2, 3]}).to_csv(path, sep=sep, index=False)

    assert read_gene_list(path, column="symbol") == ["FOS", "JUN"]
    with pytest.raises(ValueError, match="gene"):
        read_gene_list(path)


def test_read_gene_list_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_gene_list(tmp_path / "nope.txt")


def test_score_and_flag_artifact_cells(pbmc_processed, tmp_path):
    score_col = score_signature(pbmc_processed, ARTIFACT_GENES + ["NOT_A_GENE"], "delay")

    assert score_col == "delay_score"
    scores = pbmc_processed.obs.groupby("time", observed=True)[score_col].mean()
    assert scores["24h"] > scores["0h"]

    summary = flag_affected_cells(pbmc_processed, score_col, condition="time", reference="0h", percentile=95)

    assert list(summary.index) == ["0h", "24h"]
    assert summary.loc["0h", "fraction_affected"] <= 0.06
    assert summary.loc["24h", "fraction_affected"] > 0.9
    assert summary["n_cells"].sum() == pbmc_processed.n_obs
    threshold = pbmc_processed.uns["delay_score_threshold"]
    flagged = pbmc_processed.obs["delay_score_affected"]
    assert (pbmc_processed.obs.loc[flagged, score_col] > threshold).all()

    plot_signature_scores(pbmc_processed, score_col, condition="time", hue="true_celltype", save_dir=tmp_path)
    assert (tmp_path / "delay_score_by_time.png").exists()


def test_score_signature_without_genes(pbmc_processed):
    with pytest.raises(ValueError, match="None of the 2 signature genes"):
        score_signature(pbmc_processed, ["NOPE1", "NOPE2"], "empty")


def test_flag_affected_cells_errors(pbmc_processed):
    pbmc_processed.obs["s_score"] = 0.0
    with pytest.raises(ValueError, match="missing_score"):
        flag_affected_cells(pbmc_processed, "missing_score")
    with pytest.raises(ValueError, match="No cells in reference"):
        flag_affected_cells(pbmc_processed, "s_score", reference="2h")


def test_compare_signatures():
    signatures = {
        "delay": ["FOS", "JUN", "EGR1", "IER2"],
        "dissociation": ["FOS", "JUN", "HSPA1A"],
        "cold": ["RBM3", "CIRBP"],
    }
    overlap = compare_signatures(signatures, universe_size=1000)

    assert len(overlap) == 3
    pair = overlap.iloc[0]
    assert (pair["signature_a"], pair["signature_b"]) == ("delay", "dissociation")
    assert pair["overlap"] == 2
    assert pair["jaccard"] == pytest.approx(2 / 5)
    assert pair["shared_genes"] == "FOS,JUN"
    assert pair["pval"] == pytest.approx(stats.hypergeom.sf(1, 1000, 4, 3))

    disjoint = overlap.iloc[1]
    assert disjoint["overlap"] == 0
    assert disjoint["pval"] == pytest.approx(1.0)


def test_compare_signatures_plot(tmp_path):
    overlap = compare_signatures({"a": ["X", "Y"], "b": ["Y", "Z"]}, universe_size=100)
    matrix = plot_signature_overlap(overlap, save_dir=tmp_path)

    assert matrix.loc["a", "b"] == matrix.loc["b", "a"] == pytest.approx(1 / 3)
    assert (tmp_path / "signature_overlap.png").exists()
    assert plot_signature_overlap(overlap.iloc[:0]) is None


def test_compare_fold_changes():
    rng = np.random.default_rng(0)
    genes = [f"G{i}" for i in range(50)]
    lfc = rng.normal(size=50)
    de_a = pd.DataFrame({"gene": genes, "logFC": lfc})
    # Second table: same genes plus noise, duplicated across two cell types, some genes missing
    de_b = pd.DataFrame(
        {
            "gene": genes[:40] * 2,
            "logFC": np.concatenate([lfc[:40] + 0.1, lfc[:40] - 0.1]),
        }
    )

    merged, summary = compare_fold_changes(de_a, de_b)

    assert summary["n_shared"] == 40
    assert list(merged.columns) == ["gene", "logFC_a", "logFC_b"]
    np.testing.assert_allclose(merged["logFC_a"], merged["logFC_b"])
    assert summary["pearson_r"] == pytest.approx(1.0)
    assert summary["spearman_r"] == pytest.approx(1.0)


def test_compare_fold_changes_needs_overlap():
    de_a = pd.DataFrame({"gene": ["A", "B"], "logFC": [1.0, 2.0]})
    with pytest.raises(ValueError, match="shared genes"):
        compare_fold_changes(de_a, de_a)
