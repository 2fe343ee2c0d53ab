"""服务层：组装核心组件，为变更操作加锁"""
