"""
MSPrep: pre-analytic processing of mass spectrometry metabolomics data

A pipeline that summarizes technical replicates, filters compounds by
prevalence, imputes missing values and normalizes / batch corrects
LC-MS or GC-MS metabolomics quantification tables.
"""

__version__ = "0.1.0"

from .data_io import (
    ms_tidy,
    load_quantification,
    validate_quantification_table,
    ValidationResult,
)
from .dataset import (
    MSPrepData,
    ColumnSchema,
    Stage,
)
from .exceptions import (
    MSPrepError,
    ShapeError,
    StageError,
    ConfigError,
    ImputationError,
)
from .prepare import (
    ms_prepare,
    select_summary_measure,
    summarize_replicates,
)
from .filtering import (
    ms_filter,
    filter_compounds,
)
from .imputation import (
    ms_impute,
    half_min_values,
)
from .normalization import (
    ms_normalize,
    median_normalize,
    quantile_normalize,
)
from .batch_correction import (
    combat,
    ComBatResult,
)
from .factor_models import (
    crmn,
    ruv2,
    sva,
)
