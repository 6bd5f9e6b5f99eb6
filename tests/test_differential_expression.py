import numpy as np
import pandas as pd
import pytest

from scartifacts.differential_expression import (
    RESULT_COLUMNS,
    build_contrasts,
    count_degs,
    create_condition_column,
    create_pseudobulk,
    filter_genes_for_de,
    plot_de_heatmap,
    plot_de_summary,
    plot_deg_counts,
    plot_volcano,
    run_cell_level_de,
    run_de_all_celltypes,
    run_de_for_celltype,
)

from conftest import ARTIFACT_GENES


@pytest.fixture
def pseudobulk(pbmc_counts):
    adata = create_condition_column(pbmc_counts, condition="time")
    return create_pseudobulk(adata, celltype_col="true_celltype")


def test_condition_column_follows_configured_order(pbmc_counts):
    adata = create_condition_column(pbmc_counts, condition="time")
    assert list(adata.obs["condition"].cat.categories) == ["0h", "24h"]
    assert adata.obs["condition"].cat.ordered

    # Levels not in the configured list are appended
    adata = create_condition_column(pbmc_counts, condition="time", levels=["24h"])
    assert list(adata.obs["condition"].cat.categories) == ["24h", "0h"]

    adata = create_condition_column(pbmc_counts, condition="temperature")
    assert list(adata.obs["condition"].cat.categories) == ["21C"]


def test_condition_column_requires_column(pbmc_counts):
    with pytest.raises(ValueError, match="culture"):
        create_condition_column(pbmc_counts, condition="culture")


def test_pseudobulk_sums_counts(pbmc_counts, pseudobulk):
    pb_df, sample_info = pseudobulk

    assert pb_df.shape == (pbmc_counts.n_vars, 18)
    assert list(pb_df.columns) == sample_info["group_id"].tolist()
    assert pb_df.to_numpy().sum() == pytest.approx(pbmc_counts.X.sum())
    assert (sample_info["n_cells"] == 20).all()

    first = sample_info.iloc[0]
    assert first["group_id"] == f"{first['donor']}--{first['condition']}--{first['celltype']}"

    cells = (
        (pbmc_counts.obs["donor"] == "D2")
        & (pbmc_counts.obs["time"] == "24h")
        & (pbmc_counts.obs["true_celltype"] == "B")
    ).values
    expected = np.asarray(pbmc_counts.X[cells].sum(axis=0)).ravel()
    np.testing.assert_allclose(pb_df["D2--24h--B"], expected)


def test_pseudobulk_prefers_counts_layer(pbmc_counts):
    adata = create_condition_column(pbmc_counts, condition="time")
    adata.layers["counts"] = adata.X.copy()
    adata.X = adata.X * 0
    pb_df, _ = create_pseudobulk(adata, celltype_col="true_celltype")
    assert pb_df.to_numpy().sum() > 0


def test_pseudobulk_min_cells(pbmc_counts):
    adata = create_condition_column(pbmc_counts, condition="time")
    pb_df, sample_info = create_pseudobulk(adata, celltype_col="true_celltype", min_cells=21)
    assert pb_df.shape[1] == 0
    assert sample_info.empty


def test_filter_genes_for_de():
    pb_df = pd.DataFrame({"s1": [10, 0, 5], "s2": [10, 1, 4], "s3": [0, 0, 6]}, index=["a", "b", "c"])
    assert filter_genes_for_de(pb_df, min_count=5, min_samples=2).index.tolist() == ["a", "c"]


def test_build_contrasts():
    assert build_contrasts(["0h", "2h", "24h"], "0h") == [("2h_vs_0h", "2h", "0h"), ("24h_vs_0h", "24h", "0h")]
    with pytest.raises(ValueError, match="Reference level"):
        build_contrasts(["2h", "24h"], "0h")


def test_ttest_finds_artifact_genes(pseudobulk):
    pb_df, sample_info = pseudobulk

    results = run_de_all_celltypes(pb_df, sample_info, reference="0h", use_deseq2=False)

    assert list(results.columns) == RESULT_COLUMNS
    assert set(results["contrast"]) == {"24h_vs_0h"}
    assert set(results["cell_type"]) == {"B", "CD14 Monocyte", "CD4 T"}
    for _, ct_results in results.groupby("cell_type"):
        up = set(ct_results.loc[ct_results["upregulated"], "gene"])
        assert set(ARTIFACT_GENES) <= up
        artifact = ct_results.set_index("gene").loc[ARTIFACT_GENES, "logFC"]
        assert (artifact > 2).all()
    assert not (results["upregulated"] & results["downregulated"]).any()


def test_de_skips_cell_types_without_replicates(pseudobulk):
    pb_df, sample_info = pseudobulk
    one_donor = sample_info[sample_info["donor"] == "D1"]

    result = run_de_for_celltype(
        pb_df, one_donor, "B", build_contrasts(["0h", "24h"], "0h"), use_deseq2=False
    )
    assert result is None

    empty = run_de_all_celltypes(pb_df, one_donor, reference="0h", use_deseq2=False)
    assert empty.empty
    assert list(empty.columns) == RESULT_COLUMNS


def test_deseq2_finds_artifact_genes(pseudobulk):
    pb_df, sample_info = pseudobulk

    results = run_de_all_celltypes(pb_df, sample_info, reference="0h", cell_types=["B"])

    assert list(results.columns) == RESULT_COLUMNS
    up = set(results.loc[results["upregulated"], "gene"])
    assert set(ARTIFACT_GENES) <= up


def test_cell_level_wilcoxon(pbmc_processed):
    adata = create_condition_column(pbmc_processed, condition="time")

    results = run_cell_level_de(adata, reference="0h")

    assert list(results.columns) == RESULT_COLUMNS
    assert set(results["contrast"]) == {"24h_vs_0h"}
    for _, ct_results in results.groupby("cell_type"):
        up = set(ct_results.loc[ct_results["upregulated"], "gene"])
        assert set(ARTIFACT_GENES) <= up


def test_cell_level_average_expression(pbmc_processed):
    adata = create_condition_column(pbmc_processed, condition="time")

    results = run_cell_level_de(adata, reference="0h")

    b_cells = adata[(adata.obs["celltype"] == "B").values]
    fos = b_cells[:, "FOS"].X
    fos = np.asarray(fos.todense() if hasattr(fos, "todense") else fos).ravel()
    level = b_cells.obs["condition"].astype(str).values
    expected = (fos[level == "24h"].mean() + fos[level == "0h"].mean()) / 2

    row = results[(results["cell_type"] == "B") & (results["gene"] == "FOS")].iloc[0]
    assert row["AveExpr"] == pytest.approx(expected, rel=1e-4)
    assert results["AveExpr"].notna().all()


def test_cell_level_skips_small_levels(pbmc_processed):
    adata = create_condition_column(pbmc_processed, condition="time")
    results = run_cell_level_de(adata, reference="0h", min_cells=1000)
    assert results.empty


def test_count_degs():
    de_results = pd.DataFrame(
        {
            "cell_type": ["B", "B", "B", "T"],
            "contrast": ["24h_vs_0h"] * 4,
            "significant": [True, True, False, False],
            "upregulated": [True, False, False, False],
            "downregulated": [False, True, False, False],
        }
    )
    counts = count_degs(de_results).set_index("cell_type")

    assert counts.loc["B", "n_significant"] == 2
    assert counts.loc["B", "n_up"] == 1
    assert counts.loc["B", "n_down"] == 1
    assert counts.loc["T", "n_significant"] == 0
    assert count_degs(pd.DataFrame(columns=RESULT_COLUMNS)).empty


def test_de_plots(pseudobulk, tmp_path):
    pb_df, sample_info = pseudobulk
    results = run_de_all_celltypes(pb_df, sample_info, reference="0h", use_deseq2=False)
    deg_counts = count_degs(results)

    heatmap_data = plot_de_summary(deg_counts, save_path=tmp_path / "de_summary.png")
    plot_deg_counts(deg_counts, contrast_order=["24h_vs_0h"], save_path=tmp_path / "deg_counts.png")
    plot_de_heatmap(
        pb_df, sample_info, results, "B", "24h_vs_0h", condition_order=["0h", "24h"], top_n=20,
        save_path=tmp_path / "heatmap.png",
    )
    plot_volcano(results, "B", "24h_vs_0h", save_path=tmp_path / "volcano.png")
    # Missing combinations are reported, not plotted
    plot_volcano(results, "NK", "24h_vs_0h", save_path=tmp_path / "missing.png")

    assert heatmap_data.shape == (3, 1)
    for name in ["de_summary.png", "deg_counts.png", "heatmap.png", "volcano.png"]:
        assert (tmp_path / name).exists()
    assert not (tmp_path / "missing.png").exists()
