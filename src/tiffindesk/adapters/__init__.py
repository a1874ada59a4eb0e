from .feishu_clients import BitableAdapter, FeishuApiError, FeishuFactory, FieldMappingResolver

__all__ = ["BitableAdapter", "FeishuApiError", "FeishuFactory", "FieldMappingResolver"]
