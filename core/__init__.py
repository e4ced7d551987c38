"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- 狀態機：集中管理所有 Session 狀態轉換
- Sweeper：定期推進時間到期的自然轉換
- Participant Registry：管理誰在 Session 裡
- Broadcaster：每個 Session 的事件分發
- Chat：附加在 Broadcaster 上的聊天子通道
- Locks：Compare-and-swap 並發控制工具
"""
