from __future__ import annotations

import re
import unicodedata
import uuid
from typing import Optional


# Ordered: the first rule with a matching keyword wins, generic words last.
CATEGORY_RULES: list[tuple[tuple[str, ...], str, str]] = [
    # bedroom
    (("cama", "bicama", "beliche"), "Cama", "Quarto"),
    (("colchão", "colchao"), "Colchão", "Quarto"),
    (("guarda-roupa", "guarda roupa", "roupeiro"), "Guarda-roupa", "Quarto"),
    (("armário", "armario"), "Armário", "Quarto"),
    (("camiseiro",), "Armário", "Quarto"),
    (("cômoda", "comoda"), "Cômoda", "Quarto"),
    (("criado-mudo", "criado mudo", "mesa de cabeceira"), "Criado-mudo", "Quarto"),
    (("cabeceira",), "Cabeceira", "Quarto"),
    (("penteadeira", "mesa vestir"), "Penteadeira", "Quarto"),
    (("sapateira",), "Sapateira", "Quarto"),
    # living room
    (("sofá", "sofa"), "Sofá", "Sala de Estar"),
    (("poltrona",), "Poltrona", "Sala de Estar"),
    (("rack", "home", "painel tv", "painel para tv"), "Rack", "Sala de Estar"),
    (("painel",), "Painel", "Sala de Estar"),
    (("estante",), "Estante", "Sala de Estar"),
    (("puff", "pufe"), "Poltrona", "Sala de Estar"),
    # dining room
    (("mesa de jantar", "mesa jantar"), "Mesa", "Sala de Jantar"),
    (("buffet", "aparador"), "Buffet", "Sala de Jantar"),
    (("cristaleira",), "Cristaleira", "Sala de Jantar"),
    (("cadeira",), "Cadeira", "Sala de Jantar"),
    (("banco",), "Banco", "Sala de Jantar"),
    # kitchen
    (("balcão", "balcao", "bancada cozinha"), "Balcão", "Cozinha"),
    (("armário cozinha", "armario cozinha", "aéreo", "aereo"), "Armário", "Cozinha"),
    (("paneleiro",), "Armário", "Cozinha"),
    (("fruteira",), "Estante", "Cozinha"),
    (("cantinho do café", "cantinho cafe", "cantinho do cafe"), "Estante", "Cozinha"),
    # office
    (("escrivaninha", "escrevaninha"), "Escrivaninha", "Escritório"),
    (("cadeira escritório", "cadeira escritorio", "cadeira office"), "Cadeira", "Escritório"),
    (("estante livros", "estante escritório"), "Estante", "Escritório"),
    # multi-room
    (("mesa lateral", "mesa de canto", "mesa centro", "mesa apoio"), "Mesa", "Diversos"),
    (("multiuso",), "Estante", "Diversos"),
    (("expositor",), "Estante", "Diversos"),
    (("cabideiro", "cabide", "manequim"), "Outros", "Diversos"),
    (("mesa bar", "mesa bistro", "mesa bistrô"), "Mesa", "Diversos"),
    (("mesa redonda", "mesa quadrada", "mesa retangular"), "Mesa", "Sala de Jantar"),
    (("mesa infantil",), "Mesa", "Quarto"),
    (("mesa dobrável", "mesa dobravel"), "Mesa", "Diversos"),
    # generic
    (("mesa",), "Mesa", "Diversos"),
    (("bancada",), "Balcão", "Diversos"),
]

FALLBACK_CATEGORY = ("Outros", "Diversos")

FURNITURE_COLORS: dict[str, str] = {
    "Nature": "#E8D4B8",
    "Carvalho": "#C4A35A",
    "Freijó": "#C9A86C",
    "Fendi": "#D9C9B0",
    "Amêndoa": "#C19A6B",
    "Areia": "#D4C4A8",
    "Natural": "#E5D3B3",
    "Marfim": "#FFEFD5",
    "Mel": "#D4A94B",
    "Cedro": "#8B4513",
    "Cerejeira": "#9E4A2F",
    "Imbuia": "#6B4423",
    "Nogueira": "#5D4E37",
    "Canela": "#D2691E",
    "Rústico": "#A0522D",
    "Demolição": "#6B4226",
    "Tabaco": "#4A3728",
    "Café": "#3C2415",
    "Castanho": "#4E3B31",
    "Wengue": "#3D2B1F",
    "Chocolate": "#3D1C02",
    "Branco": "#FFFFFF",
    "Off White": "#FAF9F6",
    "Bege": "#F5F5DC",
    "Creme": "#FFFDD0",
    "Cinza": "#808080",
    "Grafite": "#474747",
    "Chumbo": "#36454F",
    "Preto": "#1A1A1A",
    "Azul Marinho": "#1C3A5F",
    "Azul": "#4169E1",
    "Verde": "#228B22",
    "Terracota": "#C4694B",
    "Marsala": "#7B3F3F",
    "Mostarda": "#C9A227",
    "Rosa": "#FFC0CB",
    "Vermelho": "#B22222",
    "Vinho": "#722F37",
}

DEFAULT_COLOR_HEX = "#CCCCCC"


def infer_category(name: str) -> tuple[str, str]:
    """(category, environment) from keywords in a product name."""
    n = (name or "").lower()
    for keywords, category, environment in CATEGORY_RULES:
        if any(kw in n for kw in keywords):
            return category, environment
    return FALLBACK_CATEGORY


def color_hex(color: Optional[str]) -> str:
    if not color:
        return DEFAULT_COLOR_HEX
    wanted = color.lower().strip()
    for name, hex_value in FURNITURE_COLORS.items():
        known = name.lower()
        if known == wanted or wanted in known or known in wanted:
            return hex_value
    return DEFAULT_COLOR_HEX


def _code_part(text: Optional[str], fallback: str) -> str:
    return re.sub(r"[^A-Z]", "", (text or fallback)[:3].upper()) or fallback


def new_sku_suffix() -> str:
    return f"{uuid.uuid4().int % 1_000_000:06d}"


def generate_sku(
    supplier: Optional[str],
    model: Optional[str],
    color: Optional[str] = None,
    variant_index: Optional[int] = None,
    suffix: Optional[str] = None,
) -> str:
    """
    Display code SUP-MOD-NNNNNN, or SUP-MOD-NNNNNN-COR-VV for a variant.
    Not an identity: records carry a separate full uuid.
    """
    base = f"{_code_part(supplier, 'GEN')}-{_code_part(model, 'PRD')}-{suffix or new_sku_suffix()}"
    if color and variant_index:
        return f"{base}-{_code_part(color, 'STD')}-{int(variant_index):02d}"
    return base


def fold(text: Optional[str]) -> str:
    """Lower-case and strip accents, for forgiving comparisons."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower().strip()


def digits(text: Optional[str]) -> str:
    return "".join(ch for ch in str(text or "") if ch.isdigit())
