import json

from flask import current_app
from openai import OpenAI

import storage
from models import Doctor

MAX_CANDIDATES = 25
MAX_RECOMMENDATIONS = 5

SYSTEM_PROMPT = (
    "You are a medical recommendation assistant that helps patients find suitable doctors. "
    "Only recommend doctors from the provided candidate list. Respond with a JSON object "
    '{"recommendations": [{"doctorId": number, "reason": string, "matchScore": number 1-10, '
    '"factors": [string]}]}.'
)


def _preferred(preferences, key):
    raw = preferences.get(key) or ""
    return {p.strip().lower() for p in raw.split(",") if p.strip()}


def _candidate_summary(doctor):
    return {
        "doctorId": doctor.id,
        "specialty": doctor.specialty,
        "rating": float(doctor.rating or 0),
        "reviewCount": doctor.review_count,
        "consultationFee": float(doctor.consultation_fee),
        "languages": doctor.languages or [],
        "clinicAddress": doctor.clinic_address,
        "insurancesAccepted": doctor.insurances_accepted or [],
    }


def rule_based_recommendations(candidates, preferences, limit=MAX_RECOMMENDATIONS):
    """Fallback ranking by rating, boosted for preferred specialty and language."""
    specialties = _preferred(preferences, "specialties")
    languages = _preferred(preferences, "language")
    scored = []
    for doctor in candidates:
        score = float(doctor.rating or 0) * 1.6
        factors = [f"rated {doctor.rating or 0} by {doctor.review_count} patient(s)"]
        if doctor.specialty.lower() in specialties:
            score += 1.5
            factors.append(f"specialises in {doctor.specialty}")
        if languages & {lang.lower() for lang in (doctor.languages or [])}:
            score += 0.5
            factors.append("speaks your language")
        scored.append((round(min(10.0, max(1.0, score)), 1), doctor, factors))

    scored.sort(key=lambda item: (-item[0], item[1].id))
    return [
        {"doctorId": doctor.id, "reason": "; ".join(factors), "matchScore": score, "factors": factors}
        for score, doctor, factors in scored[:limit]
    ]


def get_llm_recommendations(context):
    client = OpenAI(
        base_url=current_app.config["OPENAI_BASE_URL"],
        api_key=current_app.config["OPENAI_API_KEY"],
    )
    completion = client.chat.completions.create(
        model=current_app.config["OPENAI_MODEL"],
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(context)},
        ],
        response_format={"type": "json_object"},
        max_tokens=600,
        temperature=0.3,
    )
    content = completion.choices[0].message.content or "{}"
    return json.loads(content).get("recommendations", [])


def _clean(raw_recommendations, candidate_ids):
    cleaned = []
    for rec in raw_recommendations:
        if not isinstance(rec, dict):
            continue
        try:
            doctor_id = int(rec.get("doctorId"))
            score = float(rec.get("matchScore", 0))
        except (TypeError, ValueError):
            continue
        if doctor_id not in candidate_ids:
            continue
        factors = rec.get("factors") if isinstance(rec.get("factors"), list) else []
        cleaned.append({
            "doctorId": doctor_id,
            "reason": str(rec.get("reason", "")),
            "matchScore": min(10.0, max(1.0, score)),
            "factors": [str(f) for f in factors],
        })
    cleaned.sort(key=lambda r: -r["matchScore"])
    return cleaned[:MAX_RECOMMENDATIONS]


def get_recommendations(user, preferences):
    candidates = storage.query_doctors(
        [Doctor.is_accepting_patients.is_(True)],
        order_by=(Doctor.rating.desc(),),
    )[:MAX_CANDIDATES]
    if not candidates:
        return {"source": "rules", "recommendations": []}

    source = "rules"
    recommendations = None
    if current_app.config.get("OPENAI_API_KEY"):
        history = storage.appointments_by_patient(user.id)
        context = {
            "preferences": dict(preferences),
            "pastAppointments": [
                {"specialty": a.doctor.specialty, "date": a.appointment_date.isoformat()}
                for a in history if a.doctor is not None
            ],
            "candidates": [_candidate_summary(d) for d in candidates],
        }
        try:
            recommendations = _clean(get_llm_recommendations(context), {d.id for d in candidates})
            source = "ai"
        except Exception as e:
            current_app.logger.warning(f"[get_recommendations] LLM call failed, using rule-based ranking: {e}")
            recommendations = None

    if not recommendations:
        source = "rules"
        recommendations = rule_based_recommendations(candidates, preferences)

    by_id = {d.id: d for d in candidates}
    doctors = storage.assemble_doctors([by_id[r["doctorId"]] for r in recommendations], include_slots=False)
    for rec, doctor in zip(recommendations, doctors):
        rec["doctor"] = doctor
    return {"source": source, "recommendations": recommendations}
