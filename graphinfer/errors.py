# graphinfer/errors.py
# -*- coding: utf-8 -*-

"""Exception types raised by the engine."""

from __future__ import annotations


class GraphInferenceError(Exception):
    """Base class for errors raised by graphinfer."""


class ConfigurationError(GraphInferenceError, ValueError):
    """Invalid regularization / margin / beam width / solver, rejected at setup."""


__all__ = ["GraphInferenceError", "ConfigurationError"]
