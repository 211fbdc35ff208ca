"""Display aliases handed out for each connection attempt."""

import random

ALIASES = (
	"CaptainQuirk", "AgentZero", "CyberSamurai", "DataDynamo", "EchoRider",
	"GlitchGoblin", "HexHelper", "InfoInferno", "JoltJester", "KarmaKoder",
	"LoopLegend", "MegaMind", "NanoNinja", "OmegaOracle", "PixelPioneer",
	"QuantumQuick", "RetroRanger", "SyntaxSorcerer", "TerraTracker", "UltraUser",
	"VectorViking", "WaveWhisperer", "XenoXpert", "YottaYodeler", "ZetaZoomer",
	"AlphaAdventurer", "BinaryBard", "CircuitSage", "DigitalDruid", "EtherExplorer",
	"FluxFighter", "GigaGuru", "HyperHacker", "IonicIllusionist", "JigsawJuggler",
	"KiloKnight", "LaserLurker", "MatrixMagician", "NeutronNavigator", "OctalOutlaw",
	"PhotonPhantom", "QuasarQuester", "RuneReaper", "SiliconSpecter", "TechnoTitan",
	"UserUnusual", "VirtualVoyager", "WidgetWizard", "XFactorX", "ByteBuddy",
	"CodeComet", "DataDaredevil", "LogicLynx", "ScriptScout", "WebWanderer",
)


def random_alias() -> str:
	"""Return a uniformly random alias."""
	return random.choice(ALIASES)
