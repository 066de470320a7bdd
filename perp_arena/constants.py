"""
System-wide constants for the arena.

Centralizes flavor tables and fixed identifiers used across modules.
Tunable numbers live in config.yaml instead.
"""

# Bot flavor
BOT_NAMES = (
    "AlphaBot", "BetaMax", "GammaRay", "DeltaForce", "EpsilonX", "ZetaWave", "EtaStorm", "ThetaMind",
    "IotaPulse", "KappaRush", "LambdaCore", "MuStream", "NuSpark", "XiStorm", "OmicronX", "PiLogic",
    "RhoFlow", "SigmaPrime", "TauBlade", "UpsilonX", "PhiMind", "ChiWave", "PsiCore", "OmegaX",
    "NeonBot", "CyberX", "QuantumAI", "NeuralNet", "DeepTrade", "MatrixBot", "SynthMind", "CryptoHawk",
    "BullRunner", "BearHunter", "TrendMaster", "VolatilityKing", "ScalpPro", "SwingTrader", "DayBot",
    "MomentumX", "ReversionAI", "BreakoutPro", "ArbitrageBot", "GridMaster", "DCAPro", "KellyBot",
)

STRATEGIES = (
    "Momentum Hunter", "Mean Reversion", "Breakout Surfer", "Scalping Ninja", "Trend Follower",
    "Volatility Trader", "Grid Trading", "Arbitrage Hunter", "DCA Strategist", "Martingale Pro",
    "Kelly Criterion", "Sharpe Optimizer", "Alpha Generator", "Beta Hedger", "Gamma Scalper",
)

BOT_MINTER = "Protocol"
BOT_NAME_SUFFIX_MAX = 9999

# Persona fallback when no text generator is wired in
DEFAULT_PERSONA_PREFIX = "Unit"
DEFAULT_PERSONA_BIO = "An autonomous trading unit."

# Time
SECONDS_PER_YEAR = 365 * 24 * 3600
DAYS_PER_YEAR = 365

# Pool daily volume is reported as a multiple of the daily fee estimate
DAILY_VOLUME_FEE_MULTIPLE = 100
