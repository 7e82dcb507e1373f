#!/usr/bin/env python3
"""
Error taxonomy for the WT vs KO pipeline

DataError              malformed or empty input, fatal
ParameterError         invalid configuration, raised before any computation
StatisticalDegeneracy  a unit (cohort, gene set, group) too small or too
                       uniform to analyse; callers skip it and record it
"""


class PipelineError(Exception):
    """Base class carrying the stage and cohort a failure belongs to"""

    def __init__(self, message, stage=None, cohort=None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.cohort = cohort

    def __str__(self):
        where = []
        if self.stage:
            where.append(f"stage={self.stage}")
        if self.cohort:
            where.append(f"cohort={self.cohort}")
        if where:
            return f"[{', '.join(where)}] {self.message}"
        return self.message


class DataError(PipelineError, ValueError):
    pass


class ParameterError(PipelineError, ValueError):
    pass


class StatisticalDegeneracy(PipelineError):
    pass
