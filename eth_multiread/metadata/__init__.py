"""Off-chain token metadata enrichment from CoinGecko."""
