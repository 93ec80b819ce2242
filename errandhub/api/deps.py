"""Shared route dependencies."""

from __future__ import annotations

from fastapi import Depends, Request

from errandhub.dispatch import DispatchEngine


def get_engine(request: Request) -> DispatchEngine:
    return request.app.state.dispatch


Engine = Depends(get_engine)
