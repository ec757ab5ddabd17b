import json
import os

# 取得目前檔案所在的目錄位置，確保能正確讀取 json
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
JSON_PATH = os.path.join(BASE_DIR, "data.json")

with open(JSON_PATH, "r", encoding="utf-8") as f:
    data = json.load(f)

# --- 讀取基礎設定 ---
settings = data["game_settings"]
GRID_WIDTH = settings["grid_width"]
GRID_HEIGHT = settings["grid_height"]
INITIAL_MONEY = settings["initial_money"]
WATER_RATIO = settings["water_ratio"]
TICK_INTERVAL = settings["tick_interval"]
SIMULATION_SPEED = settings["simulation_speed"]
GROWTH_RATE = settings["growth_rate"]
CITY_NAME_MIN = settings["city_name_min"]
CITY_NAME_MAX = settings["city_name_max"]
LOG_LIMIT = settings["log_limit"]

# --- 讀取幸福度規則 ---
happiness = data["happiness_rules"]
BASE_HAPPINESS = happiness["base"]
UNEMPLOYMENT_PENALTY = happiness["unemployment_penalty"]
POWER_DEFICIT_PENALTY = happiness["power_deficit_penalty"]
WATER_DEFICIT_PENALTY = happiness["water_deficit_penalty"]
HAPPINESS_MIN = happiness["min"]
HAPPINESS_MAX = happiness["max"]

# --- 讀取財政規則 ---
finance = data["finance_rules"]
INCOME_PER_RESIDENT = finance["income_per_resident"]
EXPENSE_PER_RESIDENT = finance["expense_per_resident"]

# --- 讀取交易規則 ---
trade = data["trade_rules"]
OFFER_TTL_SECONDS = trade["offer_ttl_hours"] * 60 * 60
TRADE_MESSAGE_MAX = trade["message_max_length"]
TRADE_CLEANUP_DELAY = trade["cleanup_delay_seconds"]

# --- 客戶端副本 ---
PENDING_TIMEOUT_SECONDS = data["replica_rules"]["pending_timeout_seconds"]

# --- 存檔位置 (可用環境變數覆寫) ---
DATA_DIR = os.environ.get(
    "CITYSYNC_DATA_DIR",
    os.path.join(BASE_DIR, data["persistence"]["data_dir"]),
)

# --- 建築目錄 ---
BUILDINGS = data["buildings"]
