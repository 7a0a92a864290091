"""The five concrete Stage Runners, in pipeline order."""

from animatevdo.stages.audio import AudioStage
from animatevdo.stages.characters import CharactersStage
from animatevdo.stages.research import ResearchStage
from animatevdo.stages.script import ScriptStage
from animatevdo.stages.video import VideoStage

__all__ = ["ResearchStage", "ScriptStage", "CharactersStage", "AudioStage", "VideoStage"]
