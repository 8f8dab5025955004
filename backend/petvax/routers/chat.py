from fastapi import APIRouter

from petvax.models import ChatReply, InboundMessage
from petvax.services.assistant import PetCareAssistant

router = APIRouter(prefix="/chat", tags=["chat"])
assistant = PetCareAssistant()


@router.post("", response_model=ChatReply)
async def chat(message: InboundMessage):
    return await assistant.handle_message(message)
