"""DeployHookServer：GitHub push Webhook 触发的自动部署服务。"""
