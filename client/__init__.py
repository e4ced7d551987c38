"""
Client 同步層

push 通道不可靠（at-most-once、不補送），所以 client 端以兩條路徑收斂到 server 的狀態：
- Push：timer_sync 直接更新倒數；其他事件一律觸發完整 refetch
- Pull：不管 push 是否正常，定期 refetch

模組：
- config：SyncConfig（環境變數 FOCUS_CLIENT_*）
- api：HTTP 指令與查詢
- push：WebSocket / 同 process 的推播通道
- connectivity：connecting / connected / disconnected
- countdown：本地倒數
- sync：SessionSynchronizer
- chat：聊天紀錄合併與聊天子通道
- active_session：「我現在有沒有進行中的 Session」輪詢
"""
