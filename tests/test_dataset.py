"""Tests for the staged dataset object and column schema."""

import pandas as pd
import pytest

from msprep.dataset import (
    STAGE_ORDER,
    ColumnSchema,
    MSPrepData,
    Stage,
    build_compound_table,
    compound_id,
    require_stage,
    spread_summary,
)
from msprep.exceptions import StageError
from msprep.filtering import ms_filter
from msprep.imputation import ms_impute
from msprep.prepare import ms_prepare


class TestColumnSchema:
    """Tests for column role mapping."""

    def test_row_keys(self):
        schema = ColumnSchema(subject_id='sid', batch='plate', grouping_vars=('spike', 'sex'))
        assert schema.row_keys == ['sid', 'spike', 'sex', 'plate']
        assert schema.compound_keys == ['mz', 'rt']
        assert schema.summary_keys == ['sid', 'spike', 'sex', 'plate', 'mz', 'rt']

    def test_required_columns_without_optional(self):
        schema = ColumnSchema()
        assert schema.required_columns() == ['abundance', 'mz', 'rt', 'subject_id']

    def test_required_columns_with_replicate(self):
        schema = ColumnSchema(replicate='rep', batch='batch', grouping_vars=('spike',))
        assert schema.required_columns() == [
            'abundance', 'mz', 'rt', 'subject_id', 'rep', 'spike', 'batch'
        ]


class TestCompoundIds:
    """Tests for compound labels and ordering."""

    def test_compound_id(self):
        assert compound_id(74.0249, 0.5) == '74.0249_0.5'
        assert compound_id(100.0, 2.0) == '100_2'

    def test_compound_table_sorted(self):
        summary = pd.DataFrame({'mz': [200.0, 100.0, 100.0], 'rt': [1.0, 3.0, 2.0]})
        compounds = build_compound_table(summary, ColumnSchema())
        assert list(compounds.index) == ['100_2', '100_3', '200_1']
        assert compounds.index.name == 'compound'

    def test_spread_fills_gaps_with_nan(self):
        schema = ColumnSchema()
        summary = pd.DataFrame({
            'subject_id': ['s1', 's1', 's2'],
            'mz': [100.0, 200.0, 100.0],
            'rt': [1.0, 1.0, 1.0],
            'abundance_summary': [5.0, 6.0, 7.0],
        })
        wide = spread_summary(summary, schema, build_compound_table(summary, schema))
        assert wide.shape == (2, 2)
        assert wide.loc['s1', '200_1'] == 6.0
        assert pd.isna(wide.loc['s2', '200_1'])


class TestMSPrepData:
    """Tests for stage transitions."""

    @pytest.fixture
    def prepared(self, tidy_data):
        return ms_prepare(tidy_data, replicate='replicate', batch='batch', grouping_vars='spike')

    def test_stage_order(self):
        assert STAGE_ORDER[0] == Stage.PREPARED
        assert STAGE_ORDER[-1] == Stage.NORMALIZED

    def test_advance_returns_new_object(self, prepared):
        data = prepared.data.iloc[:, :2]
        advanced = prepared.advance(Stage.FILTERED, data, "step")

        assert advanced is not prepared
        assert advanced.stage == Stage.FILTERED
        assert advanced.method_log == prepared.method_log + ("step",)
        assert prepared.stage == Stage.PREPARED
        assert prepared.data.shape[1] == 8

    def test_stages_do_not_share_tables(self, prepared):
        filtered = ms_filter(prepared, filter_percent=0.5)
        imputed = ms_impute(filtered)

        assert filtered.replicate_info is not prepared.replicate_info
        assert filtered.compounds is not prepared.compounds
        assert filtered.medians is not prepared.medians
        assert imputed.filter_info.status is not filtered.filter_info.status
        pd.testing.assert_frame_equal(imputed.filter_info.status, filtered.filter_info.status)

        filtered.replicate_info.loc[:, 'n_present'] = -1
        assert (prepared.replicate_info['n_present'] >= 0).all()

    def test_frozen(self, prepared):
        with pytest.raises(AttributeError):
            prepared.stage = Stage.IMPUTED

    def test_require_stage(self, prepared):
        require_stage(prepared, Stage.PREPARED, 'op')
        with pytest.raises(StageError, match="op requires stage 'imputed'"):
            require_stage(prepared, Stage.IMPUTED, 'op')

    def test_require_stage_rejects_other_types(self):
        with pytest.raises(StageError, match="MSPrepData"):
            require_stage(pd.DataFrame(), Stage.PREPARED, 'op')

    def test_counts(self, prepared):
        assert isinstance(prepared, MSPrepData)
        assert prepared.n_compounds == 8
        assert prepared.n_subjects == 4
