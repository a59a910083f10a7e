# primitives/__init__.py
# 数据模型、错误与进度事件 / Data models, errors and progress events
