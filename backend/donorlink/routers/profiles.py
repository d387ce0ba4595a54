from __future__ import annotations

from typing import Annotated, List

from fastapi import APIRouter, Query

from ..models.profile import Area, District, OwnerProfile, ProfileList, ProfileUpdate, ProfileView, State
from ..services.profiles import ProfileStore
from ..services.search import DonorSearch
from .auth import CurrentProfile, Database

router = APIRouter(prefix="/profiles", tags=["profiles"])
locations = APIRouter(prefix="/locations", tags=["locations"])


@router.get("/me", response_model=OwnerProfile)
async def get_my_profile(profile: CurrentProfile, database: Database) -> OwnerProfile:
    return await ProfileStore(database).with_area(profile)


@router.patch("/me", response_model=OwnerProfile)
async def update_my_profile(payload: ProfileUpdate, profile: CurrentProfile, database: Database) -> OwnerProfile:
    store = ProfileStore(database)
    updated = await store.update(profile["_id"], payload)
    return await store.with_area(updated)


@router.get("/network", response_model=ProfileList)
async def network_matches(profile: CurrentProfile, database: Database) -> ProfileList:
    return ProfileList(profiles=await DonorSearch(database).network_matches(profile))


@router.get("/search/area/{area_id}", response_model=ProfileList)
async def search_by_area(area_id: str, profile: CurrentProfile, database: Database) -> ProfileList:
    return ProfileList(profiles=await DonorSearch(database).search_by_area(profile, area_id))


@router.get("/search/districts", response_model=ProfileList)
async def search_by_districts(
    profile: CurrentProfile,
    database: Database,
    district: Annotated[List[str] | None, Query()] = None,
    q: str | None = None,
    contacts_only: bool = False,
) -> ProfileList:
    views = await DonorSearch(database).search_by_districts(profile, district or [], q, contacts_only)
    return ProfileList(profiles=views)


@router.get("/{profile_id}", response_model=ProfileView)
async def get_profile(profile_id: str, profile: CurrentProfile, database: Database) -> ProfileView:
    return await DonorSearch(database).get_profile(profile, profile_id)


@locations.get("/states", response_model=List[State])
async def list_states(database: Database) -> List[State]:
    return await ProfileStore(database).list_states()


@locations.get("/districts", response_model=List[District])
async def list_districts(database: Database, state_id: str | None = None) -> List[District]:
    return await ProfileStore(database).list_districts(state_id)


@locations.get("/areas", response_model=List[Area])
async def list_areas(database: Database) -> List[Area]:
    return await ProfileStore(database).list_areas()
