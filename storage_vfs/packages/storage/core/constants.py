"""常量定义：集中维护存储策略相关的魔法值。"""

from http import HTTPStatus

HTTP_STATUS_OK = HTTPStatus.OK.value

# 根存储策略：主键固定为 1，挂载在 "/"，不可删除也不可迁移
ROOT_POLICY_ID = 1
ROOT_VIRTUAL_PATH = "/"
DEFAULT_POLICY_NAME = "内置-本地存储"
DEFAULT_POLICY_BASE_PATH = "data/storage"

DEFAULT_ARTICLE_IMAGE_POLICY_NAME = "内置-文章图片"
DEFAULT_COMMENT_IMAGE_POLICY_NAME = "内置-评论图片"
DEFAULT_ARTICLE_IMAGE_BASE_PATH = "data/storage/article_image"
DEFAULT_COMMENT_IMAGE_BASE_PATH = "data/storage/comment_image"
DEFAULT_ARTICLE_IMAGE_VIRTUAL_PATH = "/article_image"
DEFAULT_COMMENT_IMAGE_VIRTUAL_PATH = "/comment_image"

# 缓存键
POLICY_CACHE_KEY_BY_ID = "storage_policy:id:{}"
POLICY_CACHE_KEY_BY_PUBLIC_ID = "storage_policy:public:{}"
POLICY_CACHE_KEY_LIST = "storage_policy:list"
ONEDRIVE_TOKEN_CACHE_KEY = "onedrive:access_token:{}"

# 分页
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

DEFAULT_URL_EXPIRES_IN = 3600

# 对象存储批量删除上限
OBJECT_DELETE_BATCH_SIZE = 1000

STYLE_SEPARATORS = {"", "!", "/", "|", "-"}

DEFAULT_ONEDRIVE_CHUNK_SIZE = 10 * 1024 * 1024
