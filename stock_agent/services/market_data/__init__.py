from stock_agent.services.market_data.tencent import TencentMarketData

__all__ = ["TencentMarketData"]
