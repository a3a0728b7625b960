"""Question taxonomy and storage sentinels shared by client and server."""

from typing import Dict, List


COMMON_SENSE = "常识判断"
LOGIC = "判断推理"
LANGUAGE = "言语理解"
QUANTITY = "数量关系"
DATA_ANALYSIS = "资料分析"

CATEGORIES: List[str] = [COMMON_SENSE, LOGIC, LANGUAGE, QUANTITY, DATA_ANALYSIS]

SUB_CATEGORY_MAP: Dict[str, List[str]] = {
    COMMON_SENSE: [
        "政治常识", "法律常识", "经济常识", "人文历史", "科技常识", "地理国情", "管理公文",
    ],
    LOGIC: [
        "图形推理", "定义判断", "类比推理", "逻辑判断", "事件排序",
    ],
    LANGUAGE: [
        "逻辑填空", "中心理解", "细节判断", "语句表达", "篇章阅读",
    ],
    QUANTITY: [
        "数字推理", "数学运算", "工程问题", "行程问题", "经济利润", "几何问题", "排列组合",
        "最值问题", "和差倍比问题", "概率问题", "不定方程问题", "统筹规划问题", "分段计算问题", "数列问题",
    ],
    DATA_ANALYSIS: [
        "文字材料", "表格材料", "图形材料", "综合材料",
    ],
}

# Placed in a materials slot or notesImage once the payload lives in the image table.
IMAGE_REF = "__IMAGE_REF__"
# Written by older builds; read as IMAGE_REF.
LEGACY_IMAGE_REF = "__IDB_REF__"
IMAGE_REF_MARKERS = {IMAGE_REF, LEGACY_IMAGE_REF}

RTE_FIELD_TAG = "rte"
ANALYSIS_FIELD_TAG = "analysis"

UNANSWERED = -1

BACKUP_VERSION = 2

# Legacy flat key-value layout.
LEGACY_USERS_KEY = "xingce_users_db"
LEGACY_QUESTIONS_KEY = "xingce_questions"
LEGACY_SESSIONS_KEY = "xingce_sessions"

# Day boundaries are taken in Beijing time.
DAY_OFFSET_MS = 8 * 60 * 60 * 1000
DAY_MS = 24 * 60 * 60 * 1000

DEFAULT_AVATAR_URL = "https://api.dicebear.com/9.x/avataaars/svg?seed={seed}"
