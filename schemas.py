"""Pandera schemas for the tumor size cohort and cutpoint result tables."""
from typing import Optional

import pandas as pd
import pandera.pandas as pa
from pandera.typing import Series


class PreprocessedCohortSchema(pa.DataFrameModel):
    """Schema for cohort data after preprocessing."""

    patient_id: Series[str] = pa.Field(unique=True, nullable=False)

    tumor_size_cm: Series[float] = pa.Field(
        nullable=True,
        gt=0.0,
        le=50.0,
    )

    os_months: Optional[Series[float]] = pa.Field(nullable=True, ge=0.0, le=600.0)
    os_event: Optional[Series[pd.BooleanDtype]] = pa.Field(nullable=True)

    lc_months: Optional[Series[float]] = pa.Field(nullable=True, ge=0.0, le=600.0)
    lc_event: Optional[Series[pd.BooleanDtype]] = pa.Field(nullable=True)

    chemo_months: Optional[Series[float]] = pa.Field(nullable=True, ge=0.0, le=600.0)
    chemo_event: Optional[Series[pd.BooleanDtype]] = pa.Field(nullable=True)

    class Config:
        coerce = True
        strict = False  # Covariates pass through untouched


class SingleCutpointTableSchema(pa.DataFrameModel):
    """One row per candidate threshold."""

    threshold: Series[float] = pa.Field(nullable=False)
    low_n: Series[int] = pa.Field(ge=0)
    high_n: Series[int] = pa.Field(ge=0)
    chisq: Series[float] = pa.Field(ge=0.0)
    min_n: Series[int] = pa.Field(ge=0)

    class Config:
        coerce = True
        strict = True
        ordered = True


class DoubleCutpointTableSchema(pa.DataFrameModel):
    """One row per ordered threshold pair."""

    cut1: Series[float] = pa.Field(nullable=False)
    cut2: Series[float] = pa.Field(nullable=False)
    low_n: Series[int] = pa.Field(ge=0)
    mid_n: Series[int] = pa.Field(ge=0)
    high_n: Series[int] = pa.Field(ge=0)
    chisq: Series[float] = pa.Field(ge=0.0)
    min_n: Series[int] = pa.Field(ge=0)

    @pa.dataframe_check
    def cut2_above_cut1(cls, df):
        return df["cut2"] > df["cut1"]

    class Config:
        coerce = True
        strict = True
        ordered = True
