"""Shared test data for the msprep test suite."""

import numpy as np
import pandas as pd
import pytest


def make_tidy_data(
    n_compounds: int = 8,
    subjects=('01', '02', '03', '04'),
    spikes=('1x', '4x'),
    batches=('O1', 'O2'),
    batch_factor: float = 2.0,
    seed: int = 0,
) -> pd.DataFrame:
    """Long table with 3 technical replicates per subject/spike/batch/compound.

    Batch O2 is scaled by ``batch_factor``; replicate noise is ~2%.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for c in range(n_compounds):
        mz = 100.1234 + 10 * c
        rt = 1.0 + 0.5 * c
        base = 1e4 * (c + 1)
        for spike in spikes:
            for b, batch in enumerate(batches):
                for subject in subjects:
                    level = base * (1 + rng.normal(0, 0.1)) * (batch_factor if b == 1 else 1.0)
                    for rep in ('1', '2', '3'):
                        rows.append({
                            'mz': mz,
                            'rt': rt,
                            'spike': spike,
                            'batch': batch,
                            'replicate': rep,
                            'subject_id': subject,
                            'abundance': level * (1 + rng.normal(0, 0.02)),
                        })
    return pd.DataFrame(rows)


@pytest.fixture
def tidy_data():
    """Complete replicate design: 16 rows x 8 compounds once summarized."""
    return make_tidy_data()


@pytest.fixture
def make_data():
    """Factory for tidy tables with a custom design."""
    return make_tidy_data
