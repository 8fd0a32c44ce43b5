# -*- coding: utf-8 -*-
"""Diet — Pydantic models."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class NutritionTotals(BaseModel):
    calories_kcal: float = Field(0.0, ge=0)
    protein_g: float = Field(0.0, ge=0)
    carbs_g: float = Field(0.0, ge=0)
    fat_g: float = Field(0.0, ge=0)


class FoodItem(BaseModel):
    name: str = Field(..., min_length=1, description="Food name, e.g. 'rice', 'apple'")
    portion: Optional[str] = Field(None, description="Human-readable portion, e.g. '1 bowl'")
    grams: Optional[float] = Field(None, ge=0, description="Estimated grams for the portion")
    calories_kcal: Optional[float] = Field(None, ge=0)
    protein_g: Optional[float] = Field(None, ge=0)
    carbs_g: Optional[float] = Field(None, ge=0)
    fat_g: Optional[float] = Field(None, ge=0)
    confidence: Optional[float] = Field(None, ge=0, le=1)


class NutritionRecord(BaseModel):
    """One analyzed meal, as written to the health-data store."""

    calories: int = Field(..., ge=1, le=5000)
    protein_g: float = Field(0.0, ge=0, le=500)
    carbs_g: float = Field(0.0, ge=0, le=1000)
    fat_g: float = Field(0.0, ge=0, le=500)
    description: str = Field(..., min_length=1, max_length=500)
    items: List[FoodItem] = Field(default_factory=list)

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("Description cannot be blank")
        return v


class NutritionEntry(BaseModel):
    entry_id: str
    created_at: str
    eaten_at: str = Field(..., description="ISO8601 capture timestamp")
    record: NutritionRecord
    source: str = "vision"
    job_id: Optional[str] = None


class DailySummary(BaseModel):
    date: str = Field(..., description="YYYY-MM-DD")
    totals: NutritionTotals
    entry_count: int = Field(0, ge=0)


class NutritionSummary(BaseModel):
    start: str
    end: str
    totals: NutritionTotals
    days: List[DailySummary]


class MealCaptureRequest(BaseModel):
    image_base64: str = Field(..., description="Base64 encoded image bytes (no data: prefix)")
    image_mime: str = Field("image/jpeg", description="image/jpeg | image/png | image/heic")
    captured_at: Optional[datetime] = Field(None, description="When the photo was taken; defaults to now")


class NutritionEntriesResponse(BaseModel):
    count: int
    entries: List[NutritionEntry]
