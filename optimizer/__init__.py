"""策略参数搜索引擎应用包。

对远程回测接口进行黑盒参数搜索：网格、随机扰动和混合三种方法，
限流并发评估、Top-K 排行榜以及可选的随机时间窗口交叉验证。
"""
