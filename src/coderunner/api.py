from __future__ import annotations
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from .core.errors import InvalidSubmission
from .core.models import Language, Limits, SourceFile, SubmissionBundle
from .core.settings import load_settings
from .core.utils import infer_language_from_entry
from .logging import setup_logging
from .services.driver import ExecutionDriver
from .services.judge import Judge, TestCase

app = FastAPI(title="coderunner")


@lru_cache(maxsize=1)
def get_driver() -> ExecutionDriver:
    settings = load_settings()
    setup_logging(settings.log_level)
    return ExecutionDriver(settings=settings)


# --------- Schemas ---------

class FileReq(BaseModel):
    path: str
    content: str


class LimitsReq(BaseModel):
    cpu_time_ms: Optional[int] = Field(default=None, gt=0)
    wall_time_ms: Optional[int] = Field(default=None, gt=0)
    memory_bytes: Optional[int] = Field(default=None, gt=0)
    max_output_bytes: Optional[int] = Field(default=None, gt=0)


class ExecuteReq(BaseModel):
    language: Optional[Language] = None  # inferred from the entry file suffix when omitted
    files: List[FileReq] = Field(min_length=1)
    entry_point: Optional[str] = None
    stdin: Optional[str] = None
    limits: Optional[LimitsReq] = None


class TestCaseReq(BaseModel):
    input: str = ""
    expected_output: str


class JudgeReq(ExecuteReq):
    test_cases: List[TestCaseReq] = Field(min_length=1)


class ExecuteRes(BaseModel):
    phase: str
    termination_reason: str
    exit_code: Optional[int] = None
    stdout: str
    stderr: str
    stdout_truncated: bool
    stderr_truncated: bool
    compile_diagnostics: Optional[str] = None
    duration_ms: int
    diagnostic: Optional[str] = None
    memory_peak_bytes: Optional[int] = None


def _language(req: ExecuteReq) -> Language:
    if req.language is not None:
        return req.language
    entry = req.entry_point or req.files[0].path
    lang = infer_language_from_entry(entry)
    if lang is None:
        raise InvalidSubmission(f"cannot infer language from {entry!r}; set language")
    return lang


def _bundle(req: ExecuteReq, driver: ExecutionDriver) -> SubmissionBundle:
    s = driver.settings
    limits = s.default_limits()
    if req.limits is not None:
        given = req.limits.model_dump(exclude_none=True)
        limits = Limits(**{**limits.__dict__, **given}).clamp(s.ceiling_limits())
    return SubmissionBundle(
        language=_language(req),
        source_files=tuple(SourceFile(path=f.path, content=f.content) for f in req.files),
        entry_point=req.entry_point,
        stdin=req.stdin.encode("utf-8") if req.stdin is not None else None,
        limits=limits,
    )


# --------- Endpoints ---------

@app.get("/health")
def health():
    return {"ok": True}


@app.get("/languages")
def languages(driver: ExecutionDriver = Depends(get_driver)):
    return [driver.catalogue.get(lang).summary() for lang in driver.catalogue.languages()]


@app.post("/executions", response_model=ExecuteRes)
def execute(req: ExecuteReq, driver: ExecutionDriver = Depends(get_driver)):
    try:
        result = driver.execute(_bundle(req, driver))
    except InvalidSubmission as e:
        raise HTTPException(status_code=400, detail=e.message)
    return ExecuteRes(**result.to_dict())


@app.post("/judgements")
def judge(req: JudgeReq, driver: ExecutionDriver = Depends(get_driver)):
    cases = [TestCase(input=c.input, expected_output=c.expected_output) for c in req.test_cases]
    try:
        bundle = _bundle(req, driver)
        driver.validate(bundle)
        report = Judge(driver).judge(bundle, cases)
    except InvalidSubmission as e:
        raise HTTPException(status_code=400, detail=e.message)
    return report.to_dict()
