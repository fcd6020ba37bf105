import numpy as np
import pandas as pd
import pytest

import netsmoothpy as ns


def square(values, genes=None):
    genes = genes or [f"g{i}" for i in range(len(values))]
    return pd.DataFrame(np.array(values, dtype=float), index=genes, columns=genes)


class TestNormalizeAdjacency:
    genes = [f"gene{i + 1}" for i in range(30)]
    adjacency = ns.datasets.random_network(genes, density=0.2, random_seed=1)

    @staticmethod
    def assert_equals(f, s, threshold=1e-10):
        assert (abs(f - s) < threshold).all()

    def test_rows(self):
        anorm = ns.pp.normalize_adjacency(self.adjacency, axis="rows")

        self.assert_equals(anorm.sum(axis=1).to_numpy(), 1)
        assert anorm.index.equals(self.adjacency.index)
        assert anorm.columns.equals(self.adjacency.columns)

    def test_columns(self):
        anorm = ns.pp.normalize_adjacency(self.adjacency, axis="columns")

        self.assert_equals(anorm.sum(axis=0).to_numpy(), 1)

    def test_weighted_rows(self):
        anorm = ns.pp.normalize_adjacency(square([[1, 3], [2, 2]]), axis="rows")

        self.assert_equals(anorm.to_numpy(), np.array([[0.25, 0.75], [0.5, 0.5]]))

    def test_input_untouched(self):
        before = self.adjacency.copy()
        ns.pp.normalize_adjacency(self.adjacency)

        pd.testing.assert_frame_equal(before, self.adjacency)

    @pytest.mark.parametrize("axis", ["rows", "columns"])
    def test_zero_row_rejected(self, axis):
        adjacency = square(np.ones((4, 4)))
        adjacency.iloc[0, :] = 0

        with pytest.raises(ns.InvalidGraphError, match="zero rows"):
            ns.pp.normalize_adjacency(adjacency, axis=axis)

    @pytest.mark.parametrize("axis", ["rows", "columns"])
    def test_zero_column_rejected(self, axis):
        adjacency = square(np.ones((4, 4)))
        adjacency.iloc[:, 2] = 0

        with pytest.raises(ns.InvalidGraphError, match="zero columns"):
            ns.pp.normalize_adjacency(adjacency, axis=axis)

    def test_not_square(self):
        adjacency = pd.DataFrame(np.ones((2, 3)), index=["a", "b"], columns=["a", "b", "c"])

        with pytest.raises(ns.InvalidGraphError, match="square"):
            ns.pp.validate_adjacency(adjacency)

    def test_names_mismatch(self):
        adjacency = pd.DataFrame(np.ones((2, 2)), index=["a", "b"], columns=["b", "a"])

        with pytest.raises(ns.InvalidGraphError, match="same genes"):
            ns.pp.validate_adjacency(adjacency)

    def test_duplicated_names(self):
        with pytest.raises(ns.InvalidGraphError, match="unique"):
            ns.pp.validate_adjacency(square(np.ones((2, 2)), genes=["a", "a"]))

    def test_empty(self):
        with pytest.raises(ns.InvalidGraphError, match="empty"):
            ns.pp.validate_adjacency(pd.DataFrame())

    def test_not_finite(self):
        with pytest.raises(ns.InvalidGraphError, match="non-finite"):
            ns.pp.validate_adjacency(square([[1, np.nan], [1, 1]]))

    def test_not_dataframe(self):
        with pytest.raises(ns.InvalidGraphError):
            ns.pp.validate_adjacency(np.ones((3, 3)))

    def test_unknown_axis(self):
        with pytest.raises(ns.InvalidParameterError):
            ns.pp.normalize_adjacency(self.adjacency, axis="row")


class TestProjection:
    expression = ns.datasets.negative_binomial_counts(10, 5, random_seed=4)
    network_genes = ["gene8", "gene3", "geneX", "gene5", "geneY", "gene4"]

    def test_project(self):
        projection = ns.pp.project_on_network(self.expression, self.network_genes)

        assert projection.shape == (len(self.network_genes), 5)
        assert list(projection.index) == self.network_genes
        assert projection.columns.equals(self.expression.columns)
        assert (projection.loc[["geneX", "geneY"]] == 0).all().all()
        assert (projection.loc["gene8"] == self.expression.loc["gene8"]).all()

    def test_recombine(self):
        projection = ns.pp.project_on_network(self.expression, self.network_genes)
        recombined = ns.pp.recombine(self.expression, projection * 2 + 1)

        assert recombined.index.equals(self.expression.index)
        assert recombined.columns.equals(self.expression.columns)

        matched = ["gene3", "gene4", "gene5", "gene8"]
        unmatched = self.expression.index.difference(matched)
        assert (recombined.loc[unmatched] == self.expression.loc[unmatched]).all().all()
        assert (recombined.loc[matched] == self.expression.loc[matched] * 2 + 1).all().all()
        assert "geneX" not in recombined.index

    def test_duplicated_genes(self):
        expression = self.expression.rename(index={"gene2": "gene1"})

        with pytest.raises(ns.InvalidParameterError, match="unique"):
            ns.pp.project_on_network(expression, self.network_genes)

    def test_recombine_other_samples(self):
        projection = ns.pp.project_on_network(self.expression, self.network_genes)

        with pytest.raises(ns.InvalidParameterError):
            ns.pp.recombine(self.expression, projection.iloc[:, :3])
