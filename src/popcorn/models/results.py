"""
Demo result models — payload of the `demo_result` envelope.
"""

from typing import Optional
from pydantic import BaseModel, Field


class StepResult(BaseModel):
    step_number: int = Field(alias="stepNumber")
    action: str = ""
    description: str = ""
    passed: bool = False
    duration: float = 0
    error: Optional[str] = None
    screenshot_data_url: Optional[str] = Field(default=None, alias="screenshotDataUrl")
    timestamp: Optional[int] = None

    model_config = {"populate_by_name": True}


class ScreenshotCapture(BaseModel):
    step_number: int = Field(alias="stepNumber")
    data_url: str = Field(alias="dataUrl")
    timestamp: Optional[int] = None
    label: Optional[str] = None

    model_config = {"populate_by_name": True}


class Resolution(BaseModel):
    width: int
    height: int


class VideoMetadata(BaseModel):
    filename: str
    duration: float = 0
    file_size: int = Field(default=0, alias="fileSize")
    resolution: Optional[Resolution] = None
    mime_type: str = Field(default="video/webm", alias="mimeType")
    timestamp: Optional[int] = None

    model_config = {"populate_by_name": True}


class CriterionResult(BaseModel):
    criterion_id: str = Field(alias="criterionId")
    passed: bool
    message: str = ""
    evidence: Optional[str] = None

    model_config = {"populate_by_name": True}


class DemoResult(BaseModel):
    """demo_result payload"""
    test_plan_id: str = Field(alias="testPlanId")
    passed: bool = False
    steps: list[StepResult] = []
    summary: str = ""
    video_metadata: Optional[VideoMetadata] = Field(default=None, alias="videoMetadata")
    screenshots: list[ScreenshotCapture] = []
    criteria_results: Optional[list[CriterionResult]] = Field(default=None, alias="criteriaResults")
    duration: float = 0
    timestamp: Optional[int] = None

    model_config = {"populate_by_name": True}

    @property
    def failed_steps(self) -> list[StepResult]:
        return [s for s in self.steps if not s.passed]
