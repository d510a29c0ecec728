"""运行引擎层（engine）。

`DashboardEngine` 把行情源、K 线聚合、账户簿与风控轮询接到同一个事件循环上；
命令行入口见仓库根目录 `main.py`。
"""
