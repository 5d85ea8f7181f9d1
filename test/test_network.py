#!/usr/bin/env python3
"""
Tests for WGCNA co-expression analysis.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rnaseq_pipeline.analysis import network
from rnaseq_pipeline.analysis.network import encode_traits, select_variable_genes
from rnaseq_pipeline.config.settings import PipelineConfig


SAMPLES = ["c1", "c2", "c3", "t1", "t2", "t3"]


def make_expression(n_genes=60, seed=0):
    rng = np.random.default_rng(seed)
    data = rng.gamma(2.0, 50.0, size=(n_genes, len(SAMPLES)))
    return pd.DataFrame(data, index=[f"G{i}" for i in range(n_genes)], columns=SAMPLES)


def make_metadata():
    return pd.DataFrame(
        {"condition": ["control"] * 3 + ["treated"] * 3, "age": [30, 41, 52, 33, 45, 58]},
        index=SAMPLES,
    )


def test_select_variable_genes():
    expression = make_expression(10)
    expression.loc["G0"] = 5.0  # constant

    selected = select_variable_genes(expression, top_n=4)

    assert len(selected) == 4
    assert "G0" not in selected.index
    variances = selected.var(axis=1)
    assert list(variances) == sorted(variances, reverse=True)
    top = selected.index[0]
    assert selected.loc[top, "c1"] == pytest.approx(np.log2(expression.loc[top, "c1"] + 1))


def test_encode_traits():
    traits = encode_traits(make_metadata())

    assert list(traits.columns) == ["condition_control", "condition_treated", "age"]
    assert list(traits["condition_treated"]) == [0, 0, 0, 1, 1, 1]
    assert traits["age"].iloc[0] == 30


def test_run_wgcna(tmp_path):
    config = PipelineConfig(network_top_genes=50, threads=2)
    out = tmp_path / "network"

    def fake_wgcna(name, args, logger, **kwargs):
        expression = pd.read_csv(args[0], index_col=0)
        assert list(expression.index) == SAMPLES
        modules = ["turquoise"] * 30 + ["grey"] * (expression.shape[1] - 30)
        pd.DataFrame({"gene_id": expression.columns, "module": modules}).to_csv(
            out / "modules.csv", index=False
        )
        (out / "power.txt").write_text("12\n")

    with patch.object(network, "run_rscript", side_effect=fake_wgcna) as mock_r:
        summary = network.run_wgcna(make_expression(), make_metadata(), config, out, MagicMock())

    assert mock_r.call_args.args[0] == "wgcna.R"
    assert mock_r.call_args.args[1][3:] == [network.MIN_MODULE_SIZE, 2]
    assert summary.n_genes == 50
    assert summary.soft_power == 12
    assert summary.modules == {"turquoise": 30, "grey": 20}
    assert (out / "traits.csv").exists()


def test_run_wgcna_needs_enough_genes(tmp_path):
    with pytest.raises(ValueError, match="variable genes"):
        network.run_wgcna(make_expression(10), make_metadata(), PipelineConfig(), tmp_path, MagicMock())


def test_run_wgcna_needs_samples(tmp_path):
    expression = make_expression()[SAMPLES[:3]]

    with pytest.raises(ValueError, match="four samples"):
        network.run_wgcna(expression, make_metadata(), PipelineConfig(), tmp_path, MagicMock())
