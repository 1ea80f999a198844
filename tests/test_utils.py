from __future__ import annotations

import logging

import numpy as np
import pytest
import scipy.sparse as sp
import anndata as ad

from scfeatsel import utils


def test_load_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError, match="Configuration file not found"):
        utils.load_config(tmp_path / "missing.yaml")


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="mapping"):
        utils.load_config(path)


def test_load_config_reads_sections(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("m3drop:\n  mt_method: fdr\n  mt_threshold: 0.01\n")
    config = utils.load_config(path)
    assert config["m3drop"] == {"mt_method": "fdr", "mt_threshold": 0.01}


def test_setup_logging_writes_log_file(tmp_path):
    log_file = tmp_path / "reports" / "run.log"
    logger = utils.setup_logging(
        log_file=str(log_file), log_level="DEBUG", console_output=False
    )
    logger.info("hello")
    for handler in logger.handlers:
        handler.flush()

    assert logger.name == "scfeatsel"
    assert logger.level == logging.DEBUG
    assert "hello" in log_file.read_text()


def test_get_expression_matrix_densifies_sparse():
    adata = ad.AnnData(X=sp.csr_matrix(np.array([[0, 1], [2, 0]], dtype=np.float32)))
    X = utils.get_expression_matrix(adata)
    assert isinstance(X, np.ndarray)
    assert X.dtype == np.float64
    np.testing.assert_array_equal(X, [[0, 1], [2, 0]])


def test_get_expression_matrix_returns_copy_of_dense_data():
    adata = ad.AnnData(X=np.array([[100.0, 0.0], [5.0, 30.0]]))
    X = utils.get_expression_matrix(adata)
    np.log1p(X, out=X)
    np.testing.assert_array_equal(adata.X, [[100.0, 0.0], [5.0, 30.0]])


def test_get_expression_matrix_missing_layer_raises():
    adata = ad.AnnData(X=np.ones((2, 2)))
    with pytest.raises(KeyError, match="counts"):
        utils.get_expression_matrix(adata, layer="counts")


def test_set_random_seeds_is_reproducible():
    utils.set_random_seeds(7)
    first = np.random.rand(3)
    utils.set_random_seeds(7)
    np.testing.assert_array_equal(first, np.random.rand(3))


def test_checkpoint_roundtrip(tmp_path):
    payload = {"K": 1.5, "genes": ["A", "B"]}
    path = tmp_path / "checkpoints" / "fit.pkl"
    utils.save_checkpoint(payload, path)
    assert utils.load_checkpoint(path) == payload


def test_load_checkpoint_missing_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        utils.load_checkpoint(tmp_path / "nothing.pkl")


def test_get_timestamp_format():
    stamp = utils.get_timestamp()
    assert len(stamp) == 15 and stamp[8] == "_"
    assert utils.get_timestamp("%Y").isdigit()
