"""
API 依赖注入模块

服务实例由 main.py 挂载在 app.state 上，这里提供给路由函数使用的依赖项。
"""

from fastapi import Request


def get_orchestrator(request: Request):
    return request.app.state.orchestrator


def get_terminal(request: Request):
    return request.app.state.terminal


def get_evaluator(request: Request):
    return request.app.state.evaluator


def get_scheduler(request: Request):
    return request.app.state.scheduler


def get_pool(request: Request):
    return request.app.state.pool
