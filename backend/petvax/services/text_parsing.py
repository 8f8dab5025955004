import re
from datetime import date
from typing import Any, Dict, Optional

TODAY_TOKENS = {"today", "วันนี้"}
AFFIRMATIVE_TOKENS = {"ใช่", "ใช่ครับ", "ใช่ค่ะ", "ครับ", "ค่ะ", "โอเค", "ตกลง", "ยืนยัน", "yes", "y", "ok", "okay", "confirm"}
NEGATIVE_TOKENS = {"ไม่", "ไม่ใช่", "ไม่ครับ", "ไม่ค่ะ", "no", "n", "nope"}
CANCEL_TOKENS = {"ยกเลิก", "cancel", "stop", "exit"}
MENU_TOKENS = {"เมนู", "menu"}

KNOWN_VACCINES = {
    "rabies": "Rabies",
    "พิษสุนัขบ้า": "Rabies",
    "dhpp": "DHPP",
    "dhppi": "DHPPi",
    "dhlpp": "DHLPP",
    "dapp": "DAPP",
    "fvrcp": "FVRCP",
    "felv": "FeLV",
    "leptospirosis": "Leptospirosis",
    "lepto": "Leptospirosis",
    "ฉี่หนู": "Leptospirosis",
    "parvo": "Parvovirus",
    "ลำไส้อักเสบ": "Parvovirus",
    "distemper": "Distemper",
    "ไข้หัด": "Distemper",
    "bordetella": "Bordetella",
    "kennel cough": "Kennel Cough",
    "ไอกรน": "Kennel Cough",
    "หวัดแมว": "FVRCP",
    "รวม 5 โรค": "DHPPi+L",
    "รวม 4 โรค": "FVRCP+FeLV",
}

KNOWN_TREATMENTS = {
    "ถ่ายพยาธิ": "Deworming",
    "deworm": "Deworming",
    "deworming": "Deworming",
    "หยอดเห็บ": "Flea & Tick",
    "เห็บหมัด": "Flea & Tick",
    "flea": "Flea & Tick",
    "tick": "Flea & Tick",
    "พยาธิหนอนหัวใจ": "Heartworm Prevention",
    "heartworm": "Heartworm Prevention",
    "ทำหมัน": "Neutering",
    "neuter": "Neutering",
    "spay": "Spaying",
    "ขูดหินปูน": "Dental Scaling",
    "dental": "Dental Scaling",
}

ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
SLASH_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
CYCLE = re.compile(r"(?:รอบ|ทุก|every|cycle)\s*(\d{1,4})\s*(?:วัน|days?)?", re.I)
PET_NAME_PATTERNS = [
    re.compile(r"ชื่อ\s*[\"'“]?([^\s\"'”,]+)"),
    re.compile(r"\bnamed\s+[\"']?([^\s\"',]+)", re.I),
    re.compile(r"ให้\s*(?:น้อง)?\s*([^\s\d\"',]+)"),
    re.compile(r"ของ\s*(?:น้อง)?\s*([^\s\d\"',]+)"),
    re.compile(r"น้อง\s*([^\s\d\"',]+)"),
    re.compile(r"\bfor\s+([A-Za-z][\w'-]*)", re.I),
]
PET_NAME_STOPWORDS = {"วันนี้", "today", "หมา", "แมว", "สุนัข", "วัคซีน", "ฉีด", "my", "the", "a", "an"}
# Words that end a pet name when Thai text runs them together, e.g. "ให้โมจิวันนี้".
PET_NAME_TRAILERS = ("วันนี้", "today", "วันที่", "เมื่อ", "รอบ", "ทุก")


def normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip())


def token(text: str) -> str:
    return normalize(text).casefold().rstrip(".!? ")


def is_affirmative(text: str) -> bool:
    return token(text) in AFFIRMATIVE_TOKENS


def is_negative(text: str) -> bool:
    return token(text) in NEGATIVE_TOKENS


def is_cancel(text: str) -> bool:
    return token(text) in CANCEL_TOKENS


def is_menu(text: str) -> bool:
    return token(text) in MENU_TOKENS


def parse_date_value(value: Any) -> Optional[str]:
    """Validate a date slot: ISO date, DD/MM/YYYY (Buddhist era allowed) or the today token."""
    if value is None:
        return None
    text = token(str(value))
    if text in TODAY_TOKENS:
        return "today"
    match = ISO_DATE.fullmatch(text) or ISO_DATE.search(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return _safe_date(year, month, day)
    match = SLASH_DATE.search(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        if year > 2400:
            year -= 543
        return _safe_date(year, month, day)
    return None


def _safe_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def extract_date(text: str) -> Optional[str]:
    lowered = normalize(text).casefold()
    for candidate in TODAY_TOKENS:
        if candidate in lowered:
            return "today"
    for pattern in (ISO_DATE, SLASH_DATE):
        match = pattern.search(lowered)
        if match:
            return parse_date_value(match.group(0))
    return None


def extract_cycle_days(text: str) -> Optional[int]:
    match = CYCLE.search(text or "")
    if not match:
        return None
    days = int(match.group(1))
    return days if 1 <= days <= 3650 else None


def _trim_pet_name(candidate: str) -> str:
    """Cut a name captured from unspaced Thai at the first date or cycle word."""
    lowered = candidate.casefold()
    cut = len(candidate)
    for marker in PET_NAME_TRAILERS:
        index = lowered.find(marker)
        if index != -1:
            cut = min(cut, index)
    return candidate[:cut].strip()


def extract_pet_name(text: str) -> Optional[str]:
    cleaned = normalize(text)
    for pattern in PET_NAME_PATTERNS:
        match = pattern.search(cleaned)
        if not match:
            continue
        candidate = _trim_pet_name(match.group(1))
        if candidate and candidate.casefold() not in PET_NAME_STOPWORDS:
            return candidate
    return None


def _lookup(table: Dict[str, str], text: str) -> Optional[str]:
    lowered = normalize(text).casefold()
    for key in sorted(table, key=len, reverse=True):
        if key in lowered:
            return table[key]
    return None


def extract_vaccine_name(text: str) -> Optional[str]:
    known = _lookup(KNOWN_VACCINES, text)
    if known:
        return known
    match = re.search(r"(?:วัคซีน|vaccine)\s+([A-Za-z][\w+-]*)", normalize(text), re.I)
    return match.group(1) if match else None


def extract_treatment_name(text: str) -> Optional[str]:
    known = _lookup(KNOWN_TREATMENTS, text)
    if known:
        return known
    match = re.search(r"(?:รักษา|treatment)\s+([^\s\d]+)", normalize(text), re.I)
    return match.group(1) if match else None


def extract_slot(field: str, text: str) -> Optional[Any]:
    """Read a single awaited slot from a bare answer such as "Rabies" or "2025-11-03"."""
    cleaned = normalize(text)
    if not cleaned:
        return None
    if field == "date":
        return parse_date_value(cleaned) or extract_date(cleaned)
    if field == "cycle_days":
        digits = re.search(r"\d{1,4}", cleaned)
        return int(digits.group(0)) if digits else None
    # A bare yes or no never names a vaccine, treatment or pet.
    if is_negative(cleaned) or is_affirmative(cleaned):
        return None
    if field == "vaccine_name":
        return extract_vaccine_name(cleaned) or (cleaned if len(cleaned) <= 60 else None)
    if field == "treatment_name":
        return extract_treatment_name(cleaned) or (cleaned if len(cleaned) <= 60 else None)
    if field in {"pet_name", "name"}:
        named = extract_pet_name(cleaned)
        if named:
            return named
        if len(cleaned.split()) == 1 and len(cleaned) <= 40:
            return _trim_pet_name(cleaned.removeprefix("น้อง")) or None
        return None
    return cleaned[:200]
