import numpy as np
import pytest

from scartifacts.batch_effects import default_k0, kbet, kbet_by_condition, plot_kbet


@pytest.mark.parametrize("sizes, expected", [([20, 20], 10), ([200, 200], 50), ([1000, 3000], 100)])
def test_default_k0_is_clamped(sizes, expected):
    assert default_k0(sizes) == expected


def test_well_mixed_batches_are_accepted():
    rng = np.random.default_rng(0)
    embedding = rng.normal(size=(400, 5))
    batch = rng.choice(["a", "b"], size=400)

    result = kbet(embedding, batch, n_repeats=5)

    assert result.k0 == default_k0(np.bincount(np.unique(batch, return_inverse=True)[1]))
    assert result.rejection_rate < 0.3
    assert result.expected_rejection_rate < 0.3
    assert len(result.observed_rates) == 5


def test_separated_batches_are_rejected():
    rng = np.random.default_rng(1)
    embedding = np.vstack([rng.normal(0, 1, size=(200, 5)), rng.normal(10, 1, size=(200, 5))])
    batch = ["a"] * 200 + ["b"] * 200

    result = kbet(embedding, batch, k0=30, n_repeats=5)

    assert result.k0 == 30
    assert result.rejection_rate > 0.9
    assert result.acceptance_rate == pytest.approx(1 - result.rejection_rate)
    assert result.expected_rejection_rate < 0.3


def test_k0_smaller_than_sample():
    rng = np.random.default_rng(2)
    embedding = rng.normal(size=(30, 3))
    batch = ["a", "b"] * 15

    result = kbet(embedding, batch, k0=100, n_repeats=3)

    assert result.k0 == 29
    assert 0 <= result.rejection_rate <= 1


def test_kbet_input_errors():
    embedding = np.zeros((10, 2))
    with pytest.raises(ValueError, match="two batches"):
        kbet(embedding, ["a"] * 10)
    with pytest.raises(ValueError, match="same number"):
        kbet(embedding, ["a", "b"] * 4)


def test_kbet_by_condition_per_cell_type(pbmc_processed, tmp_path):
    results = kbet_by_condition(pbmc_processed, condition="time", reference="0h", n_repeats=3)

    assert list(results.columns) == [
        "celltype",
        "level",
        "n_cells",
        "k0",
        "rejection_rate",
        "expected_rejection_rate",
        "acceptance_rate",
    ]
    assert set(results["celltype"]) == {"CD4 T", "B", "CD14 Monocyte"}
    assert (results["level"] == "24h").all()
    assert (results["n_cells"] == 120).all()
    assert pbmc_processed.uns["kbet"] is results

    plot_kbet(results, level_order=["0h", "24h"], save_dir=tmp_path)
    assert (tmp_path / "kbet_acceptance.png").exists()


def test_kbet_by_condition_skips_small_groups(pbmc_processed, tmp_path):
    results = kbet_by_condition(pbmc_processed, min_cells_per_batch=100, n_repeats=1)
    assert results.empty

    pooled = kbet_by_condition(pbmc_processed, groupby=None, n_repeats=1)
    assert pooled["celltype"].tolist() == ["all"]

    # Nothing to plot, nothing written
    plot_kbet(results, save_dir=tmp_path)
    assert not (tmp_path / "kbet_acceptance.png").exists()


def test_kbet_by_condition_requires_embedding(pbmc_counts):
    pbmc_counts.obs["celltype"] = pbmc_counts.obs["true_celltype"]
    with pytest.raises(ValueError, match="X_pca"):
        kbet_by_condition(pbmc_counts)
    with pytest.raises(ValueError, match="culture"):
        kbet_by_condition(pbmc_counts, condition="culture")
