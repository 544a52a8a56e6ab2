from django.contrib import admin
from .models import Program, ProgramExercise, UserProgram


class ProgramExerciseInline(admin.TabularInline):
    model = ProgramExercise
    extra = 0


@admin.register(Program)
class ProgramAdmin(admin.ModelAdmin):
    list_display = ['name', 'created_at']
    search_fields = ['name']
    inlines = [ProgramExerciseInline]


@admin.register(UserProgram)
class UserProgramAdmin(admin.ModelAdmin):
    list_display = ['user', 'program', 'status', 'start_date', 'end_date']
    list_filter = ['status']
    search_fields = ['user__email', 'program__name']
    raw_id_fields = ['user']
