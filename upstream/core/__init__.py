"""核心领域逻辑：来源解析、资产选择、存储、锁、安装引擎"""
