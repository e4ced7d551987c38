"""
服務層

這個 package 包含純計算邏輯，不負責狀態轉換：
- TimerService：計時快照與自然轉換判斷
- NamingService：Odonym、邀請碼、參與者雜湊
"""
