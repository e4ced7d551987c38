"""
HTTP / WebSocket 介面層

- sessions：Session 生命週期與邀請
- chat：聊天訊息與正在輸入
- websocket：事件推播通道
"""
