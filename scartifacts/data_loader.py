#!/usr/bin/env python3
"""
Data loading utilities for the sampling-artifact study
Handles 10x library loading, hashtag separation, merging and sample sheets
"""

import re
import numpy as np
import pandas as pd
import h5py
import scanpy as sc
from scipy import sparse
import anndata
from pathlib import Path

from scartifacts.config import HASHTAG_PARAMS, TIME_LEVELS, TEMPERATURE_LEVELS, CULTURE_LEVELS

SAMPLE_SHEET_REQUIRED = ["library", "hashtag", "donor"]
SAMPLE_SHEET_OPTIONAL = ["time", "temperature", "culture", "condition"]
HASHTAG_FEATURE_TYPES = ["Antibody Capture", "Multiplexing Capture"]


def _split_hashtags(adata, hto_prefix=HASHTAG_PARAMS["hto_prefix"]):
    """Move hashtag features out of the expression matrix into obsm["hto"]"""
    hto_mask = np.asarray(adata.var_names.str.startswith(hto_prefix))
    if "feature_types" in adata.var:
        hto_mask = hto_mask | adata.var["feature_types"].isin(HASHTAG_FEATURE_TYPES).values

    if hto_mask.any():
        X_hto = adata[:, hto_mask].X
        if sparse.issparse(X_hto):
            X_hto = X_hto.toarray()
        hto = pd.DataFrame(
            np.asarray(X_hto),
            index=adata.obs_names,
            columns=adata.var_names[hto_mask],
        )
        adata = adata[:, ~hto_mask].copy()
        adata.obsm["hto"] = hto

    return adata


def _tag_library(adata, library):
    adata.obs_names = [f"{library}_{barcode}" for barcode in adata.obs_names]
    adata.obs["library"] = library
    return adata


def read_library(path, library=None):
    """Read a 10x feature-barcode matrix directory

    Args:
        path: Directory holding matrix.mtx.gz, barcodes.tsv.gz and features.tsv.gz
        library: Library name used to prefix barcodes (defaults to the directory name)

    Returns:
        AnnData with gene expression in X and hashtag counts in obsm["hto"]
    """
    path = Path(path)
    library = library or path.name

    adata = sc.read_10x_mtx(path, var_names="gene_symbols", gex_only=False)
    adata.var_names_make_unique()
    adata = _tag_library(adata, library)

    return _split_hashtags(adata)


def read_library_h5(file_path, library=None):
    """Read a 10x HDF5 feature-barcode matrix

    Args:
        file_path: Path to the .h5 file
        library: Library name used to prefix barcodes (defaults to the file stem)

    Returns:
        AnnData with gene expression in X and hashtag counts in obsm["hto"]
    """
    file_path = Path(file_path)
    library = library or file_path.stem

    with h5py.File(file_path, "r") as f:
        matrix = f["matrix"]
        features = matrix["features"]

        shape_vals = tuple(matrix["shape"][:])
        # 10x stores features x barcodes in CSC layout
        X = sparse.csc_matrix(
            (matrix["data"][:], matrix["indices"][:], matrix["indptr"][:]),
            shape=shape_vals,
        )

        gene_names = [x.decode("utf-8") for x in features["name"][:]]
        gene_ids = [x.decode("utf-8") for x in features["id"][:]]
        cell_barcodes = [x.decode("utf-8") for x in matrix["barcodes"][:]]
        feature_types = None
        if "feature_type" in features:
            feature_types = [x.decode("utf-8") for x in features["feature_type"][:]]

    adata = anndata.AnnData(X.T.tocsr().astype(np.float32))
    adata.var_names = gene_names
    adata.var["gene_ids"] = gene_ids
    if feature_types is not None:
        adata.var["feature_types"] = feature_types
    adata.obs_names = cell_barcodes
    adata.var_names_make_unique()

    adata = _tag_library(adata, library)
    return _split_hashtags(adata)


def load_and_merge_libraries(base_path, library_names):
    """Load and merge several 10x libraries

    Each library is either a directory ``base_path/<library>`` or a file
    ``base_path/<library>.h5``.

    Args:
        base_path: Base directory path
        library_names: List of library names

    Returns:
        Merged AnnData object
    """
    print("Loading 10x libraries...")

    adatas = []
    hto_tables = []
    for library in library_names:
        lib_dir = Path(base_path) / library
        lib_h5 = Path(base_path) / f"{library}.h5"
        if lib_dir.is_dir():
            print(f"Loading {lib_dir}")
            adata = read_library(lib_dir, library=library)
        elif lib_h5.exists():
            print(f"Loading {lib_h5}")
            adata = read_library_h5(lib_h5, library=library)
        else:
            raise FileNotFoundError(f"No 10x library found for {library} in {base_path}")

        hto_tables.append(adata.obsm.pop("hto", pd.DataFrame(index=adata.obs_names)))
        adatas.append(adata)

    adata_merged = anndata.concat(adatas, join="outer", fill_value=0)
    adata_merged.var_names_make_unique()

    # Hashtag panels may differ between libraries
    hto = pd.concat(hto_tables, axis=0).fillna(0)
    if hto.shape[1] > 0:
        adata_merged.obsm["hto"] = hto.loc[adata_merged.obs_names]

    print(f"Merged {len(library_names)} libraries: {adata_merged.n_obs} cells, {adata_merged.n_vars} genes")

    return adata_merged


def load_sample_sheet(path):
    """Read the sample sheet linking library/hashtag to donor and condition

    Args:
        path: .csv, .tsv/.txt or .xlsx export

    Returns:
        DataFrame with lower-case column names
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        sheet = pd.read_csv(path)
    elif suffix in (".tsv", ".txt"):
        sheet = pd.read_csv(path, sep="\t")
    elif suffix in (".xlsx", ".xls"):
        sheet = pd.read_excel(path)
    else:
        raise ValueError(f"Unsupported sample sheet format: {path.suffix}")

    sheet.columns = [str(c).strip().lower() for c in sheet.columns]

    missing = [c for c in SAMPLE_SHEET_REQUIRED if c not in sheet.columns]
    if missing:
        raise ValueError(f"Sample sheet is missing required columns: {missing}")

    for col in SAMPLE_SHEET_REQUIRED + SAMPLE_SHEET_OPTIONAL:
        if col in sheet.columns:
            # Blank optional cells stay NaN
            sheet[col] = sheet[col].where(sheet[col].isna(), sheet[col].astype(str).str.strip())

    return sheet


_TIME_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(h|hr|hrs|hour|hours|m|min|mins|minute|minutes)?$")


def parse_time_hours(label):
    """Convert a time label such as "24h" or "30min" to hours"""
    if isinstance(label, (int, float, np.integer, np.floating)) and not isinstance(label, bool):
        return float(label)

    match = _TIME_RE.match(str(label).strip().lower())
    if match is None:
        raise ValueError(f"Cannot parse time label: {label!r}")

    value, unit = match.groups()
    value = float(value)
    if unit is not None and unit.startswith("m"):
        return value / 60.0
    return value


def _ordered_levels(values, preferred):
    present = [v for v in pd.unique(values) if pd.notna(v)]
    ordered = [v for v in preferred if v in present]
    ordered.extend(v for v in present if v not in ordered)
    return ordered


def add_metadata(adata, sample_sheet, hashtag_col="hto_maxID"):
    """Add donor and sampling-condition metadata

    Cells are matched on (library, hashtag). Cells without a match keep NaN.

    Args:
        adata: AnnData object with obs["library"] and a hashtag column
        sample_sheet: DataFrame from load_sample_sheet
        hashtag_col: obs column holding the assigned hashtag

    Returns:
        AnnData object with added metadata
    """
    print("Adding metadata...")

    missing = [c for c in ["library", hashtag_col] if c not in adata.obs.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    sheet = sample_sheet.copy()
    sheet["_key"] = sheet["library"].astype(str) + "::" + sheet["hashtag"].astype(str)
    sheet = sheet.drop_duplicates("_key").set_index("_key")

    keys = adata.obs["library"].astype(str) + "::" + adata.obs[hashtag_col].astype(str)

    for col in ["donor"] + SAMPLE_SHEET_OPTIONAL:
        if col in sheet.columns:
            adata.obs[col] = keys.map(sheet[col]).values

    if "time" in adata.obs:
        levels = _ordered_levels(adata.obs["time"], TIME_LEVELS)
        levels = sorted(levels, key=parse_time_hours)
        adata.obs["time"] = pd.Categorical(adata.obs["time"], categories=levels, ordered=True)
        adata.obs["time_hours"] = [
            parse_time_hours(t) if pd.notna(t) else np.nan for t in adata.obs["time"]
        ]

    if "temperature" in adata.obs:
        levels = _ordered_levels(adata.obs["temperature"], TEMPERATURE_LEVELS)
        adata.obs["temperature"] = pd.Categorical(
            adata.obs["temperature"], categories=levels, ordered=True
        )

    if "culture" in adata.obs:
        levels = _ordered_levels(adata.obs["culture"], CULTURE_LEVELS)
        adata.obs["culture"] = pd.Categorical(adata.obs["culture"], categories=levels, ordered=True)

    n_matched = adata.obs["donor"].notna().sum()
    print(f"  Matched {n_matched:,} / {adata.n_obs:,} cells to the sample sheet")

    return adata
