"""
命名服務：生成 Odonym、邀請碼與參與者雜湊

純計算邏輯，不涉及狀態轉換
"""
import hashlib
import random
import secrets


def generate_odonym() -> str:
    """
    生成 Session 內使用的匿名代號（odonym）

    格式：形容詞 + 名詞 + 0~99
    範例：FocusedOak42, QuietRiver7

    注意：
    - 不檢查唯一性（由呼叫者負責）
    - 8 * 8 * 100 = 6,400 種可能，同一個 Session 內碰撞機率很低
    """
    adjectives = ["Focused", "Calm", "Steady", "Deep", "Clear", "Bright", "Swift", "Quiet"]
    nouns = ["Oak", "River", "Mountain", "Cloud", "Star", "Wave", "Stone", "Wind"]
    return f"{random.choice(adjectives)}{random.choice(nouns)}{random.randint(0, 99)}"


def generate_invite_code() -> str:
    """
    生成邀請碼（URL-safe，8 個字元）

    範例：q3Zk_9aB
    """
    return secrets.token_urlsafe(6)


def user_hash(user_id: str, session_id: str) -> str:
    """
    參與者在某個 Session 內的匿名身分

    同一個使用者在不同 Session 會得到不同的雜湊，
    資料庫裡不會直接存 user_id 與 odonym 的對應。

    範例：
        user_hash("u1", "s1") -> 16 個十六進位字元
    """
    return hashlib.sha256(f"{user_id}:{session_id}".encode()).hexdigest()[:16]
